import os
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# --- CARGAR VARIABLES DE ENTORNO ---
# Carga el archivo .env desde la raíz del proyecto
load_dotenv(BASE_DIR / '.env')


def _env_bool(name, default=False):
    return os.getenv(name, str(default)).lower() in ('1', 'true', 'yes')


# --- SEGURIDAD ---
SECRET_KEY = os.getenv('SECRET_KEY', 'dev-only-insecure-key')
DEBUG = _env_bool('DEBUG', False)
ALLOWED_HOSTS = [h for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

CSRF_TRUSTED_ORIGINS = [u for u in os.getenv('TRUSTED_ORIGINS', '').split(',') if u]
CSRF_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_SECURE = not DEBUG

# -------------------------------------------------
# Apps Instaladas
# -------------------------------------------------
INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    'afip',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'whitenoise.middleware.WhiteNoiseMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'core.urls'
WSGI_APPLICATION = 'core.wsgi.application'

LANGUAGE_CODE = 'es-ar'
# WSAA valida generationTime/expirationTime en hora local argentina.
TIME_ZONE = 'America/Argentina/Buenos_Aires'
USE_I18N = True
USE_TZ = True

# --- Base de datos ---
# SQLite por defecto (desarrollo y tests); MySQL vía variables de entorno.
if os.getenv('DATABASE_ENGINE', 'sqlite') == 'mysql':
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.mysql',
            'NAME': os.getenv('DATABASE_NAME'),
            'USER': os.getenv('DATABASE_USER'),
            'PASSWORD': os.getenv('DATABASE_PASSWORD'),
            'HOST': os.getenv('DATABASE_HOST', 'localhost'),
            'PORT': os.getenv('DATABASE_PORT', '3306'),
            'OPTIONS': {
                'charset': 'utf8mb4',
                'init_command': "SET sql_mode='STRICT_TRANS_TABLES'",
            },
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('DATABASE_NAME', str(BASE_DIR / 'db.sqlite3')),
        }
    }

# --- Cache (lock del barrido de tickets) ---
CACHES = {
    'default': {
        'BACKEND': os.getenv('CACHE_BACKEND', 'django.core.cache.backends.locmem.LocMemCache'),
        'LOCATION': os.getenv('CACHE_LOCATION', 'afip'),
    }
}

# --- Templates (solo admin) ---
TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

# --- Archivos estáticos (admin, servidos por whitenoise) ---
STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# -------------------------------------------------
# AFIP / ARCA (WSAA + WSFEv1)
# -------------------------------------------------
AFIP_WSAA_WSDL_HOMOLOGATION = os.getenv(
    'AFIP_WSAA_WSDL_HOMOLOGATION', 'https://wsaahomo.afip.gov.ar/ws/services/LoginCms?WSDL'
)
AFIP_WSAA_WSDL_PRODUCTION = os.getenv(
    'AFIP_WSAA_WSDL_PRODUCTION', 'https://wsaa.afip.gov.ar/ws/services/LoginCms?WSDL'
)
AFIP_WSFE_WSDL_HOMOLOGATION = os.getenv(
    'AFIP_WSFE_WSDL_HOMOLOGATION', 'https://wswhomo.afip.gov.ar/wsfev1/service.asmx?WSDL'
)
AFIP_WSFE_WSDL_PRODUCTION = os.getenv(
    'AFIP_WSFE_WSDL_PRODUCTION', 'https://servicios1.afip.gov.ar/wsfev1/service.asmx?WSDL'
)

AFIP_REQUEST_TIMEOUT = int(os.getenv('AFIP_REQUEST_TIMEOUT', 20))  # segundos
AFIP_SSL_VERIFY = _env_bool('AFIP_SSL_VERIFY', True)
AFIP_WSDL_RETRY_MAX = int(os.getenv('AFIP_WSDL_RETRY_MAX', 3))
AFIP_LOGIN_MAX_ATTEMPTS = int(os.getenv('AFIP_LOGIN_MAX_ATTEMPTS', 3))
AFIP_LOGIN_BACKOFF = float(os.getenv('AFIP_LOGIN_BACKOFF', 1))

AFIP_TICKET_RENEWAL_BUFFER = int(os.getenv('AFIP_TICKET_RENEWAL_BUFFER', 10 * 60))
AFIP_TICKET_CACHE_TTL = int(os.getenv('AFIP_TICKET_CACHE_TTL', 5 * 60))
AFIP_TRA_VALIDITY = int(os.getenv('AFIP_TRA_VALIDITY', 12 * 60 * 60))
AFIP_TRA_CLOCK_SKEW = int(os.getenv('AFIP_TRA_CLOCK_SKEW', 10 * 60))

AFIP_SWEEP_RENEWAL_BUFFER = int(os.getenv('AFIP_SWEEP_RENEWAL_BUFFER', 30 * 60))
AFIP_SWEEP_MAX_CONCURRENT = int(os.getenv('AFIP_SWEEP_MAX_CONCURRENT', 3))
AFIP_SWEEP_LOCK_TIMEOUT = int(os.getenv('AFIP_SWEEP_LOCK_TIMEOUT', 10 * 60))
AFIP_SWEEP_EVERY = int(os.getenv('AFIP_SWEEP_EVERY', 5 * 60))

# Clave Fernet para cifrar claves privadas; si falta se deriva de SECRET_KEY.
AFIP_SECRETS_KEY = os.getenv('AFIP_SECRETS_KEY') or None

# --- Celery ---
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_ALWAYS_EAGER = _env_bool('CELERY_TASK_ALWAYS_EAGER', False)
CELERY_BEAT_SCHEDULE = {
    'afip-renovar-tickets': {
        'task': 'afip.tasks.renovar_tickets_task',
        'schedule': AFIP_SWEEP_EVERY,
    },
}

# --- LOGGING ---
AFIP_LOG_FILE = os.getenv('AFIP_LOG_FILE')
AFIP_LOG_LEVEL = os.getenv('AFIP_LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
        },
    },
    'handlers': {
        'console': {
            'level': 'DEBUG',
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
        'afip': {
            'handlers': ['console'],
            'level': AFIP_LOG_LEVEL,
            'propagate': False,
        },
    },
}

if AFIP_LOG_FILE:
    LOGGING['handlers']['file'] = {
        'level': 'INFO',
        'class': 'logging.handlers.RotatingFileHandler',
        'filename': AFIP_LOG_FILE,
        'maxBytes': 1024 * 1024 * 5,  # 5MB
        'backupCount': 5,
        'formatter': 'verbose',
    }
    for _logger in ('django', 'afip'):
        LOGGING['loggers'][_logger]['handlers'].append('file')

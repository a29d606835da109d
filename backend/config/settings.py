"""
Django settings for the carnet gradebook renderer.
"""

from pathlib import Path

from decouple import config

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config("DJANGO_SECRET_KEY", default="change-me")
DEBUG = config("DJANGO_DEBUG", cast=bool, default=False)


def split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


ALLOWED_HOSTS = split_csv(config("DJANGO_ALLOWED_HOSTS", default="localhost,127.0.0.1,[::1],testserver"))
if DEBUG and config("DJANGO_ALLOW_ALL_HOSTS_IN_DEBUG", cast=bool, default=True):
    ALLOWED_HOSTS = ["*"]

SECURE_SSL_REDIRECT = config("DJANGO_SECURE_SSL_REDIRECT", cast=bool, default=False)
SESSION_COOKIE_SECURE = config("DJANGO_SESSION_COOKIE_SECURE", cast=bool, default=not DEBUG)
CSRF_COOKIE_SECURE = config("DJANGO_CSRF_COOKIE_SECURE", cast=bool, default=not DEBUG)
SECURE_CONTENT_TYPE_NOSNIFF = config(
    "DJANGO_SECURE_CONTENT_TYPE_NOSNIFF",
    cast=bool,
    default=True,
)
X_FRAME_OPTIONS = config("DJANGO_X_FRAME_OPTIONS", default="SAMEORIGIN")
if config("DJANGO_SECURE_USE_X_FORWARDED_PROTO", cast=bool, default=False):
    SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")


INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework.authtoken",
    "drf_spectacular",
    "corsheaders",
    "django_filters",
    "accounts.apps.AccountsConfig",
    "school.apps.SchoolConfig",
    "gradebooks.apps.GradebooksConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "corsheaders.middleware.CorsMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [BASE_DIR / "templates"],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    }
]

WSGI_APPLICATION = "config.wsgi.application"

DB_ENGINE = config("DJANGO_DB_ENGINE", default="sqlite").strip().lower()
if DB_ENGINE == "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": config("POSTGRES_DB", default="carnet"),
            "USER": config("POSTGRES_USER", default="carnet_user"),
            "PASSWORD": config("POSTGRES_PASSWORD", default="carnet_password"),
            "HOST": config("POSTGRES_HOST", default="db"),
            "PORT": config("POSTGRES_PORT", default=5432, cast=int),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": config("SQLITE_PATH", default=str(BASE_DIR / "db.sqlite3")),
        }
    }


AUTH_PASSWORD_VALIDATORS = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator"},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

LANGUAGE_CODE = "fr"
LANGUAGES = [
    ("fr", "French"),
    ("en", "English"),
    ("ar", "Arabic"),
]
TIME_ZONE = "Asia/Beirut"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
MEDIA_URL = config("MEDIA_URL", default="/media/")
MEDIA_ROOT = Path(config("MEDIA_ROOT", default=str(BASE_DIR / "media")))
DATA_UPLOAD_MAX_MEMORY_SIZE = config(
    "DATA_UPLOAD_MAX_MEMORY_SIZE", cast=int, default=20 * 1024 * 1024
)
STORAGES = {
    "default": {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
    },
    "staticfiles": {
        "BACKEND": "whitenoise.storage.CompressedStaticFilesStorage",
    },
}
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

AUTH_USER_MODEL = "accounts.User"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.TokenAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_FILTER_BACKENDS": [
        "django_filters.rest_framework.DjangoFilterBackend",
    ],
    "DEFAULT_SCHEMA_CLASS": "drf_spectacular.openapi.AutoSchema",
}

API_PAGE_SIZE = config("API_PAGE_SIZE", cast=int, default=50)
API_MAX_PAGE_SIZE = config("API_MAX_PAGE_SIZE", cast=int, default=200)

SPECTACULAR_SETTINGS = {
    "TITLE": "Carnet Gradebook API",
    "DESCRIPTION": "API for authoring gradebook templates and exporting student carnets",
    "VERSION": "0.1.0",
}

CORS_ALLOWED_ORIGINS = split_csv(
    config(
        "CORS_ALLOWED_ORIGINS",
        default="http://localhost:5173,http://127.0.0.1:5173",
    )
)
# Download filenames must be readable by the browser client.
CORS_EXPOSE_HEADERS = ["Content-Disposition"]
CSRF_TRUSTED_ORIGINS = split_csv(
    config(
        "CSRF_TRUSTED_ORIGINS",
        default="http://localhost:5173,http://127.0.0.1:5173",
    )
)

CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="redis://redis:6379/0")
CELERY_RESULT_BACKEND = config("CELERY_RESULT_BACKEND", default="redis://redis:6379/1")
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_BEAT_SCHEDULE = {
    "prune-export-artifacts-daily": {
        "task": "gradebooks.tasks.prune_export_artifacts",
        "schedule": 60 * 60 * 24,
    },
}

# Rendering pipeline.
GRADEBOOK_PDF_STRATEGY = config("GRADEBOOK_PDF_STRATEGY", default="vector")
GRADEBOOK_PDF_USE_NATIVE = config("GRADEBOOK_PDF_USE_NATIVE", cast=bool, default=False)
GRADEBOOK_PDF_USE_JPEG = config("GRADEBOOK_PDF_USE_JPEG", cast=bool, default=True)
GRADEBOOK_PDF_PAGE_WIDTH_PX = config("GRADEBOOK_PDF_PAGE_WIDTH_PX", cast=int, default=800)
GRADEBOOK_PDF_PAGE_HEIGHT_PX = config("GRADEBOOK_PDF_PAGE_HEIGHT_PX", cast=int, default=1120)
GRADEBOOK_PDF_DEVICE_SCALE_FACTOR = config(
    "GRADEBOOK_PDF_DEVICE_SCALE_FACTOR", cast=float, default=1.35
)
GRADEBOOK_PDF_IMAGE_QUALITY = config("GRADEBOOK_PDF_IMAGE_QUALITY", cast=int, default=72)
GRADEBOOK_PDF_CONCURRENCY = config("GRADEBOOK_PDF_CONCURRENCY", cast=int, default=3)
GRADEBOOK_PDF_READY_TIMEOUT_MS = config("GRADEBOOK_PDF_READY_TIMEOUT_MS", cast=int, default=10000)
GRADEBOOK_PDF_NAVIGATION_TIMEOUT_MS = config(
    "GRADEBOOK_PDF_NAVIGATION_TIMEOUT_MS", cast=int, default=30000
)
GRADEBOOK_BROWSER_MAX_PAGES = config("GRADEBOOK_BROWSER_MAX_PAGES", cast=int, default=4)
GRADEBOOK_BROWSER_LAUNCH_ARGS = split_csv(
    config(
        "GRADEBOOK_BROWSER_LAUNCH_ARGS",
        default="--no-sandbox,--disable-setuid-sandbox,--disable-dev-shm-usage",
    )
)
GRADEBOOK_QR_PROVIDER = config("GRADEBOOK_QR_PROVIDER", default="service")
GRADEBOOK_QR_SERVICE_URL = config(
    "GRADEBOOK_QR_SERVICE_URL",
    default="https://api.qrserver.com/v1/create-qr-code/",
)
GRADEBOOK_EMOJI_CDN_URL = config("GRADEBOOK_EMOJI_CDN_URL", default="https://emojicdn.elk.sh/")
GRADEBOOK_FLAG_CDN_URL = config("GRADEBOOK_FLAG_CDN_URL", default="https://flagcdn.com/w80/")
GRADEBOOK_REMOTE_FETCH_TIMEOUT = config("GRADEBOOK_REMOTE_FETCH_TIMEOUT", cast=int, default=10)
GRADEBOOK_IMAGE_CACHE_SIZE = config("GRADEBOOK_IMAGE_CACHE_SIZE", cast=int, default=256)
GRADEBOOK_PUBLIC_BASE_URL = config("GRADEBOOK_PUBLIC_BASE_URL", default="http://localhost:8000")
GRADEBOOK_LOCAL_MEDIA_PREFIXES = split_csv(
    config("GRADEBOOK_LOCAL_MEDIA_PREFIXES", default="/media/,/uploads/")
)
GRADEBOOK_EXPORT_ARTIFACT_RETENTION_DAYS = config(
    "GRADEBOOK_EXPORT_ARTIFACT_RETENTION_DAYS", cast=int, default=14
)

GRADEBOOK_LOG_LEVEL = config("GRADEBOOK_LOG_LEVEL", default="INFO")
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": config("DJANGO_LOG_LEVEL", default="WARNING"),
    },
    "loggers": {
        "gradebooks": {
            "handlers": ["console"],
            "level": GRADEBOOK_LOG_LEVEL,
            "propagate": False,
        },
    },
}

"""Django settings for the course generator.

This is a separate service so:
- model latency and outages never slow down the course API
- backend credentials live in one container
- rate limits apply per instructor without touching Stratum

It reads sessions from the Stratum database and signs with the same key,
so an instructor signed in to Stratum can call /api/generate-course here.
"""

from pathlib import Path
import os
import sys

import environ

BASE_DIR = Path(__file__).resolve().parent.parent
env = environ.Env(
    DJANGO_DEBUG=(bool, False),
)

_RUNNING_TESTS = len(sys.argv) > 1 and sys.argv[1] == "test"

DEBUG = env.bool("DJANGO_DEBUG", default=False)
SECRET_KEY = env("DJANGO_SECRET_KEY", default="").strip()
if not SECRET_KEY and (DEBUG or _RUNNING_TESTS):
    SECRET_KEY = "stratum-local-only-key-0f3c9a7e51d84b2aa6c1e2d4f9b07c35"
if not SECRET_KEY:
    raise RuntimeError("DJANGO_SECRET_KEY is required")


def _secret_key_looks_unsafe(secret: str) -> bool:
    normalized = secret.strip().lower()
    blocked = {
        "dev-secret",
        "changeme",
        "change_me",
        "replace_me",
        "secret",
        "password",
        "django-insecure",
    }
    if normalized in blocked or normalized.startswith("django-insecure"):
        return True
    if normalized.startswith("stratum-local-only-key"):
        return True
    return len(secret.strip()) < 32


if not DEBUG and not _RUNNING_TESTS and _secret_key_looks_unsafe(SECRET_KEY):
    raise RuntimeError("DJANGO_SECRET_KEY must be a strong non-default value when DJANGO_DEBUG=0")

ALLOWED_HOSTS = [h.strip() for h in env("DJANGO_ALLOWED_HOSTS", default="localhost,127.0.0.1").split(",") if h.strip()]

CSRF_TRUSTED_ORIGINS = []
_origins = env("CSRF_TRUSTED_ORIGINS", default="")
if _origins:
    CSRF_TRUSTED_ORIGINS = [o.strip() for o in _origins.split(",") if o.strip()]

INSTALLED_APPS = [
    "config.apps.GeneratorAdminConfig",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "django_otp",
    "django_otp.plugins.otp_totp",
    "django_otp.plugins.otp_static",
    "generator",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "config.middleware.SecurityHeadersMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "config.middleware.SiteModeMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django_otp.middleware.OTPMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ]
        },
    }
]

WSGI_APPLICATION = "config.wsgi.application"

# Point DATABASE_URL at the Stratum database to share sessions and users.
DATABASES = {
    "default": env.db(default=f"sqlite:///{BASE_DIR/'db.sqlite3'}")
}

# Rate limits and the backend circuit breaker live in the cache.
REDIS_URL = os.getenv("REDIS_URL", "").strip()
if REDIS_URL:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.redis.RedisCache",
            "LOCATION": REDIS_URL,
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "generator-default",
        }
    }

LANGUAGE_CODE = "en-us"
TIME_ZONE = env("DJANGO_TIME_ZONE", default="America/Chicago").strip() or "America/Chicago"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
STORAGES = {
    "default": {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
    },
    "staticfiles": {
        "BACKEND": "whitenoise.storage.CompressedManifestStaticFilesStorage",
    },
}
if _RUNNING_TESTS:
    STORAGES["staticfiles"] = {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "root": {
        "handlers": ["console"],
        "level": env("DJANGO_LOG_LEVEL", default="INFO").strip().upper() or "INFO",
    },
}

REQUEST_SAFETY_TRUST_PROXY_HEADERS = env.bool("REQUEST_SAFETY_TRUST_PROXY_HEADERS", default=False)
REQUEST_SAFETY_XFF_INDEX = env.int("REQUEST_SAFETY_XFF_INDEX", default=0)
ADMIN_2FA_REQUIRED = env.bool("DJANGO_ADMIN_2FA_REQUIRED", default=True)

# Successful generations are appended to Stratum's activity log.
STRATUM_INTERNAL_EVENTS_URL = env(
    "STRATUM_INTERNAL_EVENTS_URL",
    default="http://stratum_web:8000/internal/events/course-generated",
).strip()
STRATUM_INTERNAL_EVENTS_TOKEN = env("STRATUM_INTERNAL_EVENTS_TOKEN", default="").strip()
STRATUM_INTERNAL_EVENTS_TIMEOUT_SECONDS = env.int("STRATUM_INTERNAL_EVENTS_TIMEOUT_SECONDS", default=3)

_DEFAULT_CSP_POLICY = (
    "default-src 'self'; "
    "base-uri 'self'; "
    "object-src 'none'; "
    "frame-ancestors 'self'; "
    "img-src 'self' data:; "
    "style-src 'self' 'unsafe-inline'; "
    "script-src 'self'; "
    "connect-src 'self';"
)
_DEFAULT_PERMISSIONS_POLICY = (
    "accelerometer=(), autoplay=(), camera=(), display-capture=(), "
    "geolocation=(), gyroscope=(), magnetometer=(), microphone=(), "
    "payment=(), usb=()"
)
CSP_POLICY = env("DJANGO_CSP_POLICY", default="").strip()
CSP_REPORT_ONLY_POLICY = env(
    "DJANGO_CSP_REPORT_ONLY_POLICY",
    default=("" if DEBUG else _DEFAULT_CSP_POLICY),
).strip()
PERMISSIONS_POLICY = env("DJANGO_PERMISSIONS_POLICY", default=_DEFAULT_PERMISSIONS_POLICY).strip()
SECURITY_REFERRER_POLICY = env("DJANGO_SECURITY_REFERRER_POLICY", default="strict-origin-when-cross-origin").strip()

SITE_MODE = env("STRATUM_SITE_MODE", default="normal").strip().lower()
if SITE_MODE in {"readonly", "read_only"}:
    SITE_MODE = "read-only"
if SITE_MODE not in {"normal", "read-only", "maintenance"}:
    raise RuntimeError("STRATUM_SITE_MODE must be one of: normal, read-only, maintenance")
SITE_MODE_MESSAGE = env("STRATUM_SITE_MODE_MESSAGE", default="").strip()

SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
SESSION_COOKIE_SECURE = not DEBUG
CSRF_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_DOMAIN = env("DJANGO_SESSION_COOKIE_DOMAIN", default="").strip() or None
CSRF_COOKIE_DOMAIN = env("DJANGO_CSRF_COOKIE_DOMAIN", default="").strip() or None

if not DEBUG:
    SECURE_HSTS_SECONDS = env.int("DJANGO_SECURE_HSTS_SECONDS", default=3600)
    SECURE_HSTS_INCLUDE_SUBDOMAINS = env.bool("DJANGO_SECURE_HSTS_INCLUDE_SUBDOMAINS", default=False)
    SECURE_HSTS_PRELOAD = env.bool("DJANGO_SECURE_HSTS_PRELOAD", default=False)
    SECURE_CONTENT_TYPE_NOSNIFF = True
    X_FRAME_OPTIONS = "DENY"

from .settings import *

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

STRIPE_SECRET_KEY = 'sk_test_fake_key_for_testing'
STRIPE_WEBHOOK_SECRET = 'whsec_fake_secret_for_testing'
PAYMENTS_ENABLED = True

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'
RESEND_API_KEY = ''

STORAGES = {
    'default': {'BACKEND': 'django.core.files.storage.FileSystemStorage'},
    'staticfiles': {'BACKEND': 'django.contrib.staticfiles.storage.StaticFilesStorage'},
}

LOGGING['loggers']['bookings']['level'] = 'CRITICAL'
LOGGING['loggers']['payments']['level'] = 'CRITICAL'
LOGGING['loggers']['listings']['level'] = 'CRITICAL'

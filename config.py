import os

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'your-secret-key-here-make-it-long'
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'loan_ledger.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.environ.get('LOG_FORMAT', 'standard')

    # Identity: header carrying the external auth subject
    AUTH_HEADER = os.environ.get('AUTH_HEADER', 'X-Auth-Subject')

    # Reminder / overdue scanner
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    SCANNER_HOUR = int(os.environ.get('SCANNER_HOUR', '0'))
    SCANNER_MINUTE = int(os.environ.get('SCANNER_MINUTE', '0'))
    REMINDER_WINDOW_DAYS = int(os.environ.get('REMINDER_WINDOW_DAYS', '3'))
    JOB_FAILURE_THRESHOLD = int(os.environ.get('JOB_FAILURE_THRESHOLD', '3'))

    # Listing
    DEFAULT_PAGE_SIZE = int(os.environ.get('DEFAULT_PAGE_SIZE', '10'))


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SCHEDULER_ENABLED = False
    LOG_LEVEL = 'WARNING'

# palenque/config.py
import os
from dotenv import load_dotenv

# Load environment variables from .env file
basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '..', '.env')) # Look for .env file one level up


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY')
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or os.environ.get('SECRET_KEY')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Flask-RESTful must hand JWT and service errors to the Flask handlers
    PROPAGATE_EXCEPTIONS = True

    FRONTEND_URL = os.environ.get('FRONTEND_URL') or 'http://localhost:5173'
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # --- Betting rules ---
    MIN_BET_AMOUNT = os.environ.get('MIN_BET_AMOUNT', '10')
    MAX_BET_AMOUNT = os.environ.get('MAX_BET_AMOUNT', '10000')
    COMPATIBLE_BET_TOLERANCE = os.environ.get('COMPATIBLE_BET_TOLERANCE', '0.20')
    PAGO_PROPOSAL_TIMEOUT_SECONDS = int(os.environ.get('PAGO_PROPOSAL_TIMEOUT_SECONDS', 180))

    # --- Wallet rules ---
    MIN_DEPOSIT_AMOUNT = '10'
    MAX_DEPOSIT_AMOUNT = '10000'
    MIN_WITHDRAWAL_AMOUNT = '10'
    MAX_WITHDRAWAL_AMOUNT = '50000'
    MAX_WITHDRAWAL_DAILY = os.environ.get('MAX_WITHDRAWAL_DAILY', '5000')
    AUTO_COMPLETE_DEPOSITS = _env_bool('AUTO_COMPLETE_DEPOSITS', False)

    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    SCHEDULER_API_ENABLED = False

class DevelopmentConfig(Config):
    DEBUG = True
    # Deposits complete immediately in development, there is no payment gateway
    AUTO_COMPLETE_DEPOSITS = _env_bool('AUTO_COMPLETE_DEPOSITS', True)

class ProductionConfig(Config):
    DEBUG = False
    # Heroku provides DATABASE_URL but it might use postgres:// instead of postgresql://
    database_url = os.environ.get('DATABASE_URL')
    if database_url and database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)
    SQLALCHEMY_DATABASE_URI = database_url

class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'palenque-testing-secret-key-with-enough-length'
    JWT_SECRET_KEY = 'palenque-testing-jwt-secret-key-with-enough-length'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    AUTO_COMPLETE_DEPOSITS = False
    SCHEDULER_ENABLED = False
    LOG_LEVEL = 'WARNING'

# Dictionary to access configs by name
config_by_name = dict(
    development=DevelopmentConfig,
    prod=ProductionConfig,
    production=ProductionConfig,  # Heroku might use "production"
    testing=TestingConfig
)

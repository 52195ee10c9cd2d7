"""Application configuration.

Values live on plain classes so ``app.config.from_object`` can load them.
Any key can be overridden through an environment variable of the same name
prefixed with ``RENTDESK_``.  Values are read as JSON when they parse
(``RENTDESK_TAX_RATE=15``, ``RENTDESK_PAYMENT_METHODS='["CASH", "CARD"]'``)
and kept as strings otherwise.  Tests or embedding code can pass a mapping
straight to ``create_app``.
"""

import os
import tempfile


class Config:
    SECRET_KEY = 'change-me'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///rentdesk.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    UPLOAD_FOLDER = 'uploads'
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024
    LOG_LEVEL = 'INFO'

    # Mileage allowance applied at confirmation and again when the vehicle
    # comes back.
    FREE_MILEAGE_PER_DAY = 100
    EXTRA_MILEAGE_RATE = 50

    # Invoicing
    TAX_RATE = 0
    TAX_NAME = 'VAT'
    INVOICE_PREFIX = 'INV'
    PAYMENT_TERMS_DAYS = 7
    DEFAULT_INVOICE_TERMS = ('Payment is due within the stated terms. '
                             'Late payments may attract additional charges.')

    # Currency formatting
    CURRENCY_CODE = 'LKR'
    CURRENCY_SYMBOL = 'Rs.'
    CURRENCY_POSITION = 'before'

    FUEL_LEVELS = ['EMPTY', 'QUARTER', 'HALF', 'THREE_QUARTER', 'FULL']
    PAYMENT_METHODS = ['CASH', 'CARD', 'BANK_TRANSFER', 'ONLINE']
    DOCUMENT_TYPES = ['ID_CARD', 'DRIVING_LICENSE', 'PASSPORT', 'OTHER']
    ALLOWED_UPLOAD_EXTENSIONS = {'png', 'jpg', 'jpeg', 'pdf'}


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    UPLOAD_FOLDER = os.path.join(tempfile.gettempdir(), 'rentdesk-test-uploads')
    LOG_LEVEL = 'DEBUG'


def format_currency(amount, config) -> str:
    """Format ``amount`` using the configured currency symbol and position."""
    formatted = f"{float(amount or 0):,.2f}"
    symbol = config.get('CURRENCY_SYMBOL', '')
    if config.get('CURRENCY_POSITION', 'before') == 'before':
        return f"{symbol}{formatted}"
    return f"{formatted} {symbol}"

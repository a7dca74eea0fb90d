import os
from dotenv import load_dotenv

# Load environment variables from .env file(s)
load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_list(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(',') if item.strip()]


def _env_int(name, default):
    try:
        raw = os.environ.get(name)
        if raw in (None, ''):
            return default
        return int(raw)
    except ValueError:
        return default


def _env_float(name, default):
    try:
        raw = os.environ.get(name)
        if raw in (None, ''):
            return default
        return float(raw)
    except ValueError:
        return default


class Config:
    # Storage root. Every owner partition, backup and cover lives below it.
    DATA_DIR = os.environ.get('BIBLION_DATA_DIR') or os.path.join(basedir, 'db_biblion')

    # Owner keys that resolve to the shared pre-multi-user store (plus the empty owner)
    LEGACY_OWNERS = _env_list('BIBLION_LEGACY_OWNERS', ['legacy'])

    # Dated backups kept per owner
    BACKUP_RETENTION = _env_int('BIBLION_BACKUP_RETENTION', 10)

    # Metadata lookup
    METADATA_LANGUAGE = os.environ.get('BIBLION_METADATA_LANGUAGE', 'es')
    METADATA_FOREIGN_LANGUAGE = os.environ.get('BIBLION_METADATA_FOREIGN_LANGUAGE', 'en')
    METADATA_TIMEOUT = _env_float('BIBLION_METADATA_TIMEOUT', 8.0)
    GOOGLE_BOOKS_API_KEY = os.environ.get('GOOGLE_BOOKS_API_KEY')

    # Companion server (phone scanner)
    HOST = os.environ.get('BIBLION_HOST', '0.0.0.0')
    PORT = _env_int('BIBLION_PORT', 3000)

    # File uploads / JSON bodies
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB, bulk saves can be large

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

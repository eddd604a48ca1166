"""
Centralized path configuration for Stardeck
Ensures all modules use consistent, volume-mounted paths
"""

import os

# Base path - absolute in production (/var/lib/stardeck is a persistent volume)
DATA_DIR = os.getenv('STARDECK_DATA_DIR', '/var/lib/stardeck')

# For development/testing outside a provisioned host
if 'STARDECK_DATA_DIR' not in os.environ and not os.path.exists('/var/lib/stardeck'):
    DATA_DIR = './data'

DATABASE_PATH = os.path.join(DATA_DIR, 'stardeck.db')
DATABASE_URL = os.getenv('STARDECK_DATABASE_URL', f'sqlite:///{DATABASE_PATH}')

# Rendered stack definitions, one directory per stack
STACKS_DIR = os.path.join(DATA_DIR, 'stacks')

# Bind mount backups, one directory per backup
BACKUPS_DIR = os.path.join(DATA_DIR, 'backups')

LOGS_DIR = os.path.join(DATA_DIR, 'logs')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, STACKS_DIR, BACKUPS_DIR, LOGS_DIR]:
        os.makedirs(directory, exist_ok=True)
        try:
            os.chmod(directory, 0o700)
        except OSError:
            pass  # May not have permission in some environments

"""
Centralized path configuration for DockShift
Keeps log output in one place regardless of how the service is launched
"""

import os

# The /app/data directory is mounted as a volume when running in Docker
DATA_DIR = os.getenv('DOCKSHIFT_DATA_DIR', '/app/data')

LOG_DIR = os.path.join(DATA_DIR, 'logs')


def ensure_data_dirs():
    """Create data directories if they don't exist"""
    for directory in [DATA_DIR, LOG_DIR]:
        os.makedirs(directory, mode=0o700, exist_ok=True)


# For development/testing outside Docker
if not os.path.exists('/app') and 'DOCKSHIFT_DATA_DIR' not in os.environ:
    DATA_DIR = './data'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')

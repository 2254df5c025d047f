"""
Edition Engine Configuration.

All settings are read through navconfig, so they can be overridden
from the environment or from ``env/.env``.
"""
from navconfig import config


# Database schema holding the collections and editions tables
EDITIONS_SCHEMA = config.get('EDITIONS_SCHEMA', fallback='editions')

# Width of the zero-padded edition sequence ("001", "002", ...)
EDITIONS_SUBID_WIDTH = config.getint('EDITIONS_SUBID_WIDTH', fallback=3)

# Seconds a pending reservation may live before the sweeper returns it
EDITIONS_RESERVATION_TIMEOUT = config.getint(
    'EDITIONS_RESERVATION_TIMEOUT',
    fallback=300
)

# Seconds between two runs of the reservation sweeper job
EDITIONS_SWEEP_INTERVAL = config.getint(
    'EDITIONS_SWEEP_INTERVAL',
    fallback=60
)

# Optional seed for the allocator RNG (reproducible draws)
EDITIONS_RANDOM_SEED = config.get('EDITIONS_RANDOM_SEED', fallback=None)

# Session groups mapped to caller roles
EDITIONS_ADMIN_GROUPS = [
    g.strip() for g in config.get(
        'EDITIONS_ADMIN_GROUPS',
        fallback='admin,editions_admin'
    ).split(',') if g.strip()
]
EDITIONS_OWNER_GROUPS = [
    g.strip() for g in config.get(
        'EDITIONS_OWNER_GROUPS',
        fallback='owner,creators'
    ).split(',') if g.strip()
]

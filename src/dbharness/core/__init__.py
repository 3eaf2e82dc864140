"""dbharness core -- errors, logging, settings and protocols.

Layout::

    errors.py      Error hierarchy (HarnessError and the specific kinds)
    logging.py     structlog configuration and helpers
    settings.py    HarnessSettings (pydantic-settings, DBHARNESS_ prefix)
    protocols.py   DB-API, deployer, granter and observer contracts
"""

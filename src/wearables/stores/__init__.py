"""Persistence for the Withings integration.

Each store is an ABC with a PostgreSQL implementation on the shared asyncpg
pool (``src.services.database``).  Writes are idempotent upserts keyed on
the table's UNIQUE constraint; see ``src.wearables.sync.dedup``.

Stores:
    CredentialStore  — one OAuth credential per (user, provider)
    OAuthStateStore  — single-use CSRF state for the authorization flow
    MeasurementStore — idempotent, append-mostly measurement history
    LiveVitalsCache  — latest reading per (user, device class)
"""

from src.wearables.stores.credentials import CredentialStore, PostgresCredentialStore
from src.wearables.stores.live_vitals import LiveVitalsCache, PostgresLiveVitalsCache
from src.wearables.stores.measurements import MeasurementStore, PostgresMeasurementStore
from src.wearables.stores.oauth_state import OAuthStateStore, PostgresOAuthStateStore

__all__ = [
    "CredentialStore",
    "PostgresCredentialStore",
    "OAuthStateStore",
    "PostgresOAuthStateStore",
    "MeasurementStore",
    "PostgresMeasurementStore",
    "LiveVitalsCache",
    "PostgresLiveVitalsCache",
]

from .config import NauttajaConfig, load_config
from .exceptions import NauttajaError, SaveStoreError
from .storage.save_store import Backup, LoadResult, Save, SaveLocation, SaveStore

__version__ = "0.2.0"

__all__ = [
    "NauttajaConfig",
    "load_config",
    "NauttajaError",
    "SaveStoreError",
    "Backup",
    "LoadResult",
    "Save",
    "SaveLocation",
    "SaveStore",
]

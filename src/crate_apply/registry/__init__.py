from .client import RegistryClient, RegistryPage, list_all
from .crates_io import CratesIoClient

__all__ = [
    "CratesIoClient",
    "RegistryClient",
    "RegistryPage",
    "list_all",
]

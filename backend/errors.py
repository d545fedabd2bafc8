from typing import Dict, Optional


class CatalogError(Exception):
    """Base class for every error raised by the catalog backend."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CatalogError):
    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors: Dict[str, str] = dict(errors or {})


class NotFound(CatalogError):
    pass


class StorageError(CatalogError):
    pass


class StorageUnavailable(StorageError):
    pass


class StorageOperationFailed(StorageError):
    pass


class PersistenceError(CatalogError):
    pass


class EmailError(CatalogError):
    pass


class EmailServiceUnavailable(EmailError):
    pass


class EmailDeliveryFailed(EmailError):
    pass

"""Storage layer - Database schemas, repositories and the signature ledger."""

from burn_sync.storage.claims import SignatureClaims
from burn_sync.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from burn_sync.storage.models import (
    Base,
    BurnDeliveryModel,
    ParseFailureModel,
    ProcessedSignatureModel,
)
from burn_sync.storage.repos import (
    BurnDeliveryDTO,
    BurnDeliveryRepository,
    ParseFailureDTO,
    ParseFailureRepository,
    ProcessedSignatureDTO,
    ProcessedSignatureRepository,
)
from burn_sync.storage.signature_ledger import SignatureLedger, StorageError

__all__ = [
    "Base",
    "BurnDeliveryDTO",
    "BurnDeliveryModel",
    "BurnDeliveryRepository",
    "DatabaseManager",
    "ParseFailureDTO",
    "ParseFailureModel",
    "ParseFailureRepository",
    "ProcessedSignatureDTO",
    "ProcessedSignatureModel",
    "ProcessedSignatureRepository",
    "SignatureClaims",
    "SignatureLedger",
    "StorageError",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]

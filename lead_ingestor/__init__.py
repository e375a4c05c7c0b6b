"""Ingest real-estate lead CSV files into the campaigns/address/phonequeue schema."""

from .errors import (
    AlreadyRunning,
    CampaignResolutionFailure,
    ConfigurationError,
    ExecutionTimeout,
    InvalidFileError,
    LeadIngestError,
    MalformedRow,
    PersistenceFailed,
    TransientStoreError,
)
from .pipeline import ExitCode, FileReport, process_file, run
from .settings import Settings, get_settings, load_settings

__version__ = "0.1.0"

__all__ = [
    "AlreadyRunning",
    "CampaignResolutionFailure",
    "ConfigurationError",
    "ExecutionTimeout",
    "ExitCode",
    "FileReport",
    "InvalidFileError",
    "LeadIngestError",
    "MalformedRow",
    "PersistenceFailed",
    "Settings",
    "TransientStoreError",
    "__version__",
    "get_settings",
    "load_settings",
    "process_file",
    "run",
]

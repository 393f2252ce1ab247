"""Daily-salted subject anonymization."""
from .anonymizer import (
    Anonymizer,
    AnonymizerConfig,
    compute_subject_hash,
    is_valid_subject_hash,
)
from .salt_store import DailySalt, SaltStore, generate_salt

__all__ = [
    "Anonymizer",
    "AnonymizerConfig",
    "compute_subject_hash",
    "is_valid_subject_hash",
    "DailySalt",
    "SaltStore",
    "generate_salt",
]

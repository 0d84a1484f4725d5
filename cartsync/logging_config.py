"""
Logging setup shared by the service and the reconciliation core.
"""
import hashlib
import logging

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging once for the process"""
    logging.basicConfig(level=level, format=LOG_FORMAT)


def hash_identifier(identifier: str) -> str:
    """Hash identifier for logging (no PII)"""
    return hashlib.sha256(identifier.encode()).hexdigest()[:8]

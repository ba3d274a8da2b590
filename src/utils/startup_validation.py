"""
Startup validation utilities to check configuration before doing any work.

The indexer refuses to run with configuration errors; the HTTP service logs
them and keeps ingest/read endpoints up while the signer reports itself as
not ready.
"""

import re
import sys
from typing import List

from src.utils.logger import logger

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
PRIVKEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


class ValidationError(Exception):
    """Raised when a critical validation check fails."""
    pass


class StartupValidator:
    """Collects configuration errors and warnings for one process role."""

    def __init__(self, settings=None):
        if settings is None:
            from src.config import common_settings as settings
        self.settings = settings
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate_indexer(self) -> bool:
        logger.info("StartupValidator: Validating indexer configuration")
        self._validate_ledger_config()
        self._validate_store_config()
        self._validate_enrichment_config()
        self._report_results()
        return len(self.errors) == 0

    def validate_attester(self) -> bool:
        logger.info("StartupValidator: Validating attestation service configuration")
        self._validate_signer_config()
        self._validate_optional_config()
        self._report_results()
        return len(self.errors) == 0

    def _validate_ledger_config(self) -> None:
        s = self.settings
        if not s.RPC_URL:
            self.errors.append("RPC_URL is not set")
        if not s.FACTORY_ADDRESSES:
            self.errors.append("FACTORY_ADDRESS is not set and no deployment descriptor was found")
        bad = [a for a in s.FACTORY_ADDRESSES if not ADDRESS_RE.match(a)]
        if bad:
            self.errors.append(f"Malformed FACTORY_ADDRESS entries: {', '.join(bad)}")
        if s.SCAN_BATCH_SIZE <= 0:
            self.errors.append("SCAN_BATCH_SIZE must be positive")

    def _validate_store_config(self) -> None:
        backend = self.settings.STORE_BACKEND
        if backend not in ("file", "postgres"):
            self.errors.append(f"Unknown STORE_BACKEND: {backend}")
            return
        if backend != "postgres":
            return
        try:
            from src.config.database_config import validate_database_environment
            if not validate_database_environment():
                self.errors.append("Database configuration validation failed")
                return

            from src.services.connection_pool import get_connection_pool
            pool = get_connection_pool()
            conn = pool.get_connection()
            pool.return_connection(conn)
            logger.info("StartupValidator: Database connectivity test passed")
        except RuntimeError as e:
            self.errors.append(f"Database validation failed: {e}")

    def _validate_enrichment_config(self) -> None:
        s = self.settings
        if not s.TREASURY_ADDRESS:
            self.warnings.append("TREASURY_ADDRESS not set: funding submissions stay pending")
        elif not ADDRESS_RE.match(s.TREASURY_ADDRESS):
            self.errors.append("TREASURY_ADDRESS is not a valid address")
        if not s.METADATA_BASE_URL:
            self.warnings.append(f"METADATA_BASE_URL not set: metadata read from {s.METADATA_DIR} only")
        if not s.DOWNSTREAM_URL:
            self.warnings.append("DOWNSTREAM_URL not set: snapshots are not pushed downstream")

    def _validate_signer_config(self) -> None:
        s = self.settings
        if not s.GATE_ADDR:
            self.errors.append("GATE_ADDR is not set")
        elif not ADDRESS_RE.match(s.GATE_ADDR):
            self.errors.append("GATE_ADDR is not a valid address")
        if not s.ATTESTER_PRIVKEY:
            self.errors.append("ATTESTER_PRIVKEY is not set")
        elif not PRIVKEY_RE.match(s.ATTESTER_PRIVKEY):
            self.errors.append("ATTESTER_PRIVKEY must be 32 bytes of hex")

    def _validate_optional_config(self) -> None:
        s = self.settings
        if s.ALLOWED_ORIGINS == ["*"]:
            self.warnings.append("ALLOWED_ORIGINS allows every origin")
        if not s.ZKPASS_APP_ID:
            self.warnings.append("ZKPASS_APP_ID not set: /gates will publish an empty appId")
        if s.K_ANONYMITY < 1:
            self.warnings.append("K_ANONYMITY below 1 disables suppression downstream")

    def _report_results(self) -> None:
        """Report validation results."""
        if self.errors:
            logger.error("StartupValidator: %d critical errors found:", len(self.errors))
            for error in self.errors:
                logger.error("  - %s", error)

        if self.warnings:
            logger.warning("StartupValidator: %d warnings found:", len(self.warnings))
            for warning in self.warnings:
                logger.warning("  - %s", warning)

        if not self.errors and not self.warnings:
            logger.info("StartupValidator: All validation checks passed successfully")
        elif not self.errors:
            logger.info("StartupValidator: Critical validation passed with %d warnings", len(self.warnings))


def validate_startup(role: str = "attester") -> bool:
    """
    Run startup validation for ``role`` ("indexer" or "attester").

    Returns:
        True if validation passes, False if critical errors found.
    """
    validator = StartupValidator()
    if role == "indexer":
        return validator.validate_indexer()
    return validator.validate_attester()


def validate_or_exit(role: str = "indexer") -> None:
    """Run startup validation and exit non-zero on critical errors."""
    if not validate_startup(role):
        logger.error("StartupValidator: Critical validation errors found. Exiting.")
        sys.exit(1)

    logger.info("StartupValidator: System validation completed successfully")

import os
import json
from dotenv import load_dotenv

load_dotenv()  # Load environment variables from .env file


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _read_deployment(network: str) -> dict:
    """Deployment descriptor written by the contract deploy scripts, if present."""
    path = os.path.join(os.getcwd(), "deployments", f"{network}.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return {}


# --------------------------------------------------
# Ledger / Indexer Configuration
# --------------------------------------------------
RPC_URL = os.environ.get("RPC_URL") or "https://sepolia.era.zksync.dev"
DEPLOYMENT_NETWORK = os.environ.get("DEPLOYMENT_NETWORK", "zkSyncSepolia")
_DEPLOYMENT = _read_deployment(DEPLOYMENT_NETWORK)

# Comma-separated; the first entry is the primary factory
_factory_env = os.environ.get("FACTORY_ADDRESS", "")
if not _factory_env and isinstance(_DEPLOYMENT.get("factory"), dict):
    _factory_env = str(_DEPLOYMENT["factory"].get("address") or "")
FACTORY_ADDRESSES = [a.strip().lower() for a in _factory_env.split(",") if a.strip()]

START_BLOCK = _int_env(
    "START_BLOCK",
    int((_DEPLOYMENT.get("factory") or {}).get("deployBlock") or 0),
)
# Only scan the most recent N blocks when set (0 = disabled)
TAIL_WINDOW_BLOCKS = _int_env("TAIL_WINDOW_BLOCKS", 0)
SCAN_BATCH_SIZE = _int_env("SCAN_BATCH_SIZE", 500)
ADDRESS_CHUNK_SIZE = _int_env("ADDRESS_CHUNK_SIZE", 50)

RPC_TIMEOUT_SECONDS = _float_env("RPC_TIMEOUT_SECONDS", 20.0)
RPC_MAX_RETRIES = _int_env("RPC_MAX_RETRIES", 3)
RPC_BACKOFF_SECONDS = _float_env("RPC_BACKOFF_SECONDS", 1.0)

# --------------------------------------------------
# Snapshot / Store Configuration
# --------------------------------------------------
OUTPUT_DIR = os.path.abspath(os.environ.get("OUTPUT_DIR") or os.path.join("public", "api"))
STORE_BACKEND = os.environ.get("STORE_BACKEND", "file").lower()

# --------------------------------------------------
# Enrichment Configuration
# --------------------------------------------------
METADATA_DIR = os.environ.get("METADATA_DIR") or os.path.join("public", "meta")
METADATA_BASE_URL = (os.environ.get("METADATA_BASE_URL") or "").rstrip("/")
METADATA_TIMEOUT_SECONDS = _float_env("METADATA_TIMEOUT_SECONDS", 10.0)
# Where dashboards fetch metadata when no METADATA_BASE_URL is set
METADATA_PUBLIC_PATH = os.environ.get("METADATA_PUBLIC_PATH", "/meta")
FUNDING_DIR = os.environ.get("FUNDING_DIR") or os.path.join("public", "api", "funding")
# Funding submissions live under <FUNDING_DIR>/<chainId>/
INDEXER_CHAIN_ID = _int_env("INDEXER_CHAIN_ID", 300)
TREASURY_ADDRESS = (os.environ.get("TREASURY_ADDRESS") or "").lower()
MIN_CONFIRMATIONS = _int_env("MIN_CONFIRMATIONS", 2)

# --------------------------------------------------
# Downstream Push Configuration
# --------------------------------------------------
DOWNSTREAM_URL = (os.environ.get("DOWNSTREAM_URL") or "").rstrip("/")
DOWNSTREAM_TOKEN = os.environ.get("DOWNSTREAM_TOKEN")
PUSH_MAX_RETRIES = _int_env("PUSH_MAX_RETRIES", 3)
PUSH_TIMEOUT_SECONDS = _float_env("PUSH_TIMEOUT_SECONDS", 15.0)

# --------------------------------------------------
# Attestation Service Configuration
# --------------------------------------------------
PORT = _int_env("PORT", 8787)
ATTESTATION_OUTPUT_DIR = os.path.abspath(os.environ.get("ATTESTATION_OUTPUT_DIR") or "out-api")
CHAIN_ID = _int_env("CHAIN_ID", 534351)
GATE_ADDR = (os.environ.get("GATE_ADDR") or "").lower()
ATTESTER_PRIVKEY = os.environ.get("ATTESTER_PRIVKEY") or ""
K_ANONYMITY = _int_env("K_ANONYMITY", 5)
ELIGIBILITY_DOMAIN_NAME = os.environ.get("ELIGIBILITY_DOMAIN_NAME", "DScopeEligibility")
ELIGIBILITY_DOMAIN_VERSION = os.environ.get("ELIGIBILITY_DOMAIN_VERSION", "1")
ALLOWED_ORIGINS = [o.strip() for o in os.environ.get("ALLOWED_ORIGINS", "*").split(",") if o.strip()]

# Proof schema identifiers (third-party proof provider)
ZKPASS_APP_ID = os.environ.get("ZKPASS_APP_ID", "")
ZKPASS_SCHEMAS = {
    "binanceDob": os.environ.get("ZKPASS_SCHEMA_BINANCE_DOB") or "b6fd16b78d9f4eba93bc458c2bb05ae9",
    "kucoinCountry": os.environ.get("ZKPASS_SCHEMA_KUCOIN_REGION") or "65f20da81c7142459828d672c83daaa2",
    "kucoinKyc": os.environ.get("ZKPASS_SCHEMA_KUCOIN_KYC") or "848605696f0e45f9a4d9b9896e8d4269",
}

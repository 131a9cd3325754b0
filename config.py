# betsync/config.py
from dotenv import load_dotenv
import os

load_dotenv()

# ------------------------------------------------------------
# Networks / contracts
# ------------------------------------------------------------
DEFAULT_NETWORK = os.getenv("NETWORK", "testnet")

NETWORKS = {
    "mainnet": {
        "key": "mainnet",
        "chain_id": 8453,
        "name": "Base Mainnet",
        "rpc": os.getenv("MAINNET_RPC_URL", "https://mainnet.base.org"),
        "explorer": "https://basescan.org",
        "challenge_contract": os.getenv("MAINNET_CHALLENGE_CONTRACT", ""),
        "offer_contract": os.getenv("MAINNET_OFFER_CONTRACT", ""),
    },
    "testnet": {
        "key": "testnet",
        "chain_id": 84532,
        "name": "Base Sepolia",
        "rpc": os.getenv("TESTNET_RPC_URL", "https://sepolia.base.org"),
        "explorer": "https://sepolia.basescan.org",
        "challenge_contract": os.getenv(
            "TESTNET_CHALLENGE_CONTRACT",
            "0x474b39dF73745CFC9D84A961b2544b4b236757Dc",
        ),
        "offer_contract": os.getenv(
            "TESTNET_OFFER_CONTRACT",
            "0x474b39dF73745CFC9D84A961b2544b4b236757Dc",
        ),
    },
}


def get_network(key: str) -> dict:
    try:
        return NETWORKS[key]
    except KeyError:
        raise ValueError(f"Unknown network: {key!r}") from None


# ------------------------------------------------------------
# RPC / scanning
# ------------------------------------------------------------
RPC_TIMEOUT = float(os.getenv("RPC_TIMEOUT", "20"))  # seconds

LOG_CHUNK_SIZE = int(os.getenv("LOG_CHUNK_SIZE", "9999"))  # blocks per eth_getLogs
DISCOVERY_WINDOW_BLOCKS = int(os.getenv("DISCOVERY_WINDOW_BLOCKS", "100000"))
BASELINE_WINDOW_BLOCKS = int(os.getenv("BASELINE_WINDOW_BLOCKS", "50000"))

POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "30"))  # seconds

# Foreground lookup: one retry after a fixed delay
LOOKUP_RETRY_ATTEMPTS = int(os.getenv("LOOKUP_RETRY_ATTEMPTS", "2"))
LOOKUP_RETRY_DELAY = float(os.getenv("LOOKUP_RETRY_DELAY", "1.5"))

# Post-confirmation refetch
REFRESH_RETRY_ATTEMPTS = int(os.getenv("REFRESH_RETRY_ATTEMPTS", "3"))
REFRESH_RETRY_DELAY = float(os.getenv("REFRESH_RETRY_DELAY", "1.5"))
REFRESH_RETRY_BACKOFF = float(os.getenv("REFRESH_RETRY_BACKOFF", "2.0"))

RECEIPT_TIMEOUT = int(os.getenv("RECEIPT_TIMEOUT", "120"))

# ------------------------------------------------------------
# App / DB / price
# ------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./betsync.db")

ETH_USD_URL = os.getenv(
    "ETH_USD_URL",
    "https://api.coinbase.com/v2/prices/ETH-USD/spot",
)
PRICE_CACHE_SECONDS = int(os.getenv("PRICE_CACHE_SECONDS", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

import os
from dotenv import load_dotenv

load_dotenv(override=False)

# RPC endpoints, tried in order; the reader rotates on failure
RPC_URLS = [u.strip() for u in os.environ.get("RPC_URLS", "https://sepolia.base.org").split(",") if u.strip()]

# Base Sepolia reference deployment
FACTORY_ADDRESS = os.environ.get("FACTORY_ADDRESS", "0xa12F5A16B2c84Fa4AA5443bF06E9f1c9A04246A9")
FUNDING_TOKEN_ADDRESS = os.environ.get("FUNDING_TOKEN_ADDRESS", "0x036CbD53842c5426634e7929541eC2318f3dCF7e")

START_BLOCK = int(os.environ.get("START_BLOCK", "0"))
START_BLOCKS_AGO = int(os.environ.get("START_BLOCKS_AGO", "9999"))
CHUNK_SIZE = int(os.environ.get("CHUNK_SIZE", "2000"))
POLL_INTERVAL_SECONDS = float(os.environ.get("POLL_INTERVAL_SECONDS", "5"))

AVG_BLOCK_TIME_SECONDS = int(os.environ.get("AVG_BLOCK_TIME_SECONDS", "2"))

CHAIN_READ_TIMEOUT_SECONDS = float(os.environ.get("CHAIN_READ_TIMEOUT_SECONDS", "10"))
# balance reads on auxiliary chains
AUX_READ_TIMEOUT_SECONDS = float(os.environ.get("AUX_READ_TIMEOUT_SECONDS", "2.5"))

# Auxiliary chains for funding-token balance reads:
#   AUX_CHAINS="Base Sepolia|https://sepolia.base.org|0x036C...;Arbitrum Sepolia|https://...|0x75fa..."
AUX_CHAINS = [
    tuple(p.strip() for p in entry.split("|"))
    for entry in os.environ.get("AUX_CHAINS", "").split(";")
    if entry.count("|") == 2
]

DB_URL = os.environ.get("DB_URL", "sqlite://sales.sqlite3")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

API_HOST = os.environ.get("API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("API_PORT", "42069"))

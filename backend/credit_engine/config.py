"""
Credit Engine Configuration and Constants

Rate tables, grant amounts, cache windows and rate limits are defined here.
Credits are priced at API cost: 1 credit = $0.10.
"""

import os

# ==================== CREDIT PRECISION ====================
# Balances are stored as integer tenths of a credit
CREDIT_SCALE = 10
MAX_CHARGE_CREDITS = 10000
MAX_CREDIT_AMOUNT = 1000000  # purchases, grants, adjustments
USD_PER_CREDIT = 0.10

# ==================== BASE CREDIT RATES ====================
# Credits per unit of work, keyed by unit kind (model / tool)
BASE_CREDIT_RATES = {
    "flux-pro": 0.5,             # Flux Pro Kontext
    "flux-2": 0.3,               # Flux 2
    "flux-multi": 0.5,           # Multi-image (same as Flux Pro)
    "nano-banana-pro": 2.5,      # Nano Banana Pro
    "qwen-image-layered": 0.3,   # Layer extraction (same as Flux 2)
    "video-to-audio": 0.4,       # MMAudio V2
    "model3d-normal": 2.5,       # Hunyuan3D full textures + PBR
    "model3d-lowpoly": 2.5,      # Hunyuan3D optimized mesh
    "model3d-geometry": 2.0,     # Hunyuan3D geometry only
    "upscale-2x": 0.5,
    "upscale-4x": 1.0,
}

DEFAULT_UNIT_KIND = "flux-pro"

# ==================== PRICING MULTIPLIERS ====================
PRICING_MULTIPLIERS = {
    "batch_premium": 1.15,         # Applied per unit when quantity > 1
    "external_agent_markup": 1.2,  # Applied to the batch-adjusted total
    "pay_per_call_markup": 1.25,   # Facilitator rail, covers settlement risk/fees
}

QUANTITY_LIMITS = {
    "min": 1,
    "max": 100,
}

CLIENT_CLASSES = {"standard", "externalAgent"}

# Purchase scaling: (minimum USD, multiplier), checked top-down
PURCHASE_CREDITS_PER_USD = 5
PURCHASE_VOLUME_TIERS = [
    (80, 1.3),
    (40, 1.2),
    (20, 1.1),
]
PURCHASE_HOLDER_BONUS = 1.2

# ==================== DAILY GRANTS ====================
# Granted once per UTC calendar day to qualifying holders
DAILY_GRANTS = {
    "fungible_token_holder": float(os.environ.get("DAILY_GRANT_TOKEN_HOLDER", "20")),
    "collectible_holder": float(os.environ.get("DAILY_GRANT_COLLECTIBLE_HOLDER", "20")),
}

# ==================== TOKEN GATE ====================
TOKEN_GATE = {
    "enabled": os.environ.get("TOKEN_GATE_ENABLED", "true").lower() == "true",
    "contract_address": os.environ.get("TOKEN_GATE_CONTRACT", ""),
    "chain_id": os.environ.get("TOKEN_GATE_CHAIN_ID", "8453"),
    "chain_name": os.environ.get("TOKEN_GATE_CHAIN_NAME", "Base"),
    "name": os.environ.get("TOKEN_GATE_NAME", "SEISO"),
    "is_fungible": os.environ.get("TOKEN_GATE_IS_ERC20", "true").lower() == "true",
    "decimals": int(os.environ.get("TOKEN_GATE_DECIMALS", "18")),
    "minimum_balance": float(os.environ.get("TOKEN_GATE_MIN_BALANCE", "1")),
}

# Secondary collections that also qualify, checked in order after the gate token.
# Entries: {"contract_address": "0x...", "chain_id": "1", "name": "Genesis"}
QUALIFYING_COLLECTIONS = []

# Chains whose addresses are case-insensitive hex (account-model chains)
EVM_CHAIN_IDS = {"1", "10", "137", "8453", "42161", "84532"}

ALCHEMY_RPC_URLS = {
    "1": "https://eth-mainnet.g.alchemy.com/v2",
    "137": "https://polygon-mainnet.g.alchemy.com/v2",
    "42161": "https://arb-mainnet.g.alchemy.com/v2",
    "10": "https://opt-mainnet.g.alchemy.com/v2",
    "8453": "https://base-mainnet.g.alchemy.com/v2",
}

RPC_URL_ENV_VARS = {
    "1": "ETH_RPC_URL",
    "137": "POLYGON_RPC_URL",
    "42161": "ARBITRUM_RPC_URL",
    "10": "OPTIMISM_RPC_URL",
    "8453": "BASE_RPC_URL",
}

# ==================== CACHE ====================
CACHE_CONFIG = {
    "entitlement_ttl_seconds": 5 * 60,
    "local_max_entries": 10000,
    "key_prefix": "entitlement:",
}

# ==================== TIMEOUTS (seconds) ====================
TIMEOUTS = {
    "account_lookup": 5.0,
    "shared_store": 1.0,
    "chain_rpc": 5.0,
    "facilitator": 10.0,
    "facilitator_jwt_ttl": 120,
}

# ==================== RATE LIMITS ====================
# Two nested fixed windows per identity: per-minute and per-day
RATE_WINDOWS = {
    "minute": 60,
    "day": 86400,
}

TIER_ORDER = ["free", "basic", "pro", "enterprise"]

TIER_LIMITS = {
    "free": {"minute": 10, "day": 200},
    "basic": {"minute": 30, "day": 2000},
    "pro": {"minute": 120, "day": 10000},
    "enterprise": {"minute": 600, "day": 100000},
}

# API keys carry their own limits; these are the defaults for new keys
API_KEY_DEFAULT_LIMITS = {"minute": 60, "day": 10000}

# ==================== PAY PER CALL ====================
PAY_PER_CALL = {
    "facilitator_url": os.environ.get(
        "X402_FACILITATOR_URL",
        "https://api.cdp.coinbase.com/platform/v2/x402"
        if os.environ.get("APP_ENV", "development").lower() == "production"
        else "https://x402.org/facilitator"
    ),
    "pay_to": os.environ.get("X402_WALLET_ADDRESS", os.environ.get("EVM_PAYMENT_WALLET_ADDRESS", "")),
    "network": os.environ.get("X402_NETWORK", "eip155:8453"),
    "asset": os.environ.get("X402_ASSET", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"),
    "asset_decimals": 6,
    "scheme": "exact",
    "x402_version": 2,
    "max_timeout_seconds": 60,
    "claim_ttl_seconds": 900,
    "max_proof_bytes": 16384,
    "proof_headers": ("payment-signature", "x-payment"),
    "opt_in_header": "x-payment-mode",
    "opt_in_value": "pay-per-call",
    "credential_headers": ("authorization", "x-api-key"),
}

# ==================== ERROR CODES ====================
ERROR_CODES = {
    "INSUFFICIENT_CREDITS": "Not enough credits. Please purchase more or wait for your daily grant.",
    "INVALID_PRICING_INPUT": "The requested work could not be priced.",
    "INVALID_CREDIT_AMOUNT": "Credit amount must be a finite positive number within limits.",
    "ACCOUNT_NOT_FOUND": "Account not found.",
    "CHARGE_NOT_FOUND": "Charge not found.",
    "CHARGE_NOT_REFUNDABLE": "Charge has already been committed.",
    "CHARGE_CONFLICT": "A charge with this reference already exists.",
    "PAYMENT_VERIFICATION_FAILED": "Payment could not be verified.",
    "PAYMENT_SETTLEMENT_FAILED": "Payment could not be settled.",
    "RATE_LIMIT": "Rate limit exceeded. Please wait before making another request.",
}

"""
Chain Balance Source

Read-only balance lookups used by the holder resolver:
- get_fungible_balance(address, contract, chain_id) -> raw integer balance
- get_collectible_count(address, contract, chain_id) -> number of tokens held

Any RPC failure is raised as EntitlementResolutionFailed; the resolver
turns that into "no access".
"""

import asyncio
import logging
import os
import re
from typing import Dict, Optional, Protocol

from web3 import AsyncWeb3

from .config import ALCHEMY_RPC_URLS, RPC_URL_ENV_VARS, EVM_CHAIN_IDS, TIMEOUTS
from .errors import EntitlementResolutionFailed

logger = logging.getLogger(__name__)

EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

# Minimal ABIs: only balanceOf is needed for either token standard
ERC20_ABI = [
    {
        "name": "balanceOf",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]
ERC721_ABI = ERC20_ABI


def normalize_address(address: Optional[str], chain_id: str) -> Optional[str]:
    """
    Canonical form of an address for cache keys and lookups.

    EVM addresses are case-insensitive and are lowercased; addresses on other
    chains are case-sensitive and only stripped. Returns None when the
    address is empty or is not a valid EVM address on an EVM chain.
    """
    if not address or not isinstance(address, str):
        return None

    address = address.strip()
    if not address:
        return None

    if chain_id in EVM_CHAIN_IDS:
        if not EVM_ADDRESS_RE.match(address):
            return None
        return address.lower()

    return address


def rpc_url_for_chain(chain_id: str) -> Optional[str]:
    """Explicit <CHAIN>_RPC_URL wins; otherwise an Alchemy URL if a key is set."""
    env_var = RPC_URL_ENV_VARS.get(chain_id)
    if env_var and os.environ.get(env_var):
        return os.environ[env_var]

    api_key = os.environ.get("ALCHEMY_API_KEY")
    if api_key and chain_id in ALCHEMY_RPC_URLS:
        return f"{ALCHEMY_RPC_URLS[chain_id]}/{api_key}"

    return None


class ChainBalanceSource(Protocol):
    async def get_fungible_balance(self, address: str, contract: str, chain_id: str) -> int: ...

    async def get_collectible_count(self, address: str, contract: str, chain_id: str) -> int: ...


class Web3ChainBalanceSource:
    """ChainBalanceSource over JSON-RPC using web3's async provider."""

    def __init__(self, rpc_urls: Optional[Dict[str, str]] = None, timeout: float = TIMEOUTS["chain_rpc"]):
        self.rpc_urls = dict(rpc_urls or {})
        self.timeout = timeout
        self._clients: Dict[str, AsyncWeb3] = {}

    def _client(self, chain_id: str) -> AsyncWeb3:
        if chain_id not in self._clients:
            url = self.rpc_urls.get(chain_id) or rpc_url_for_chain(chain_id)
            if not url:
                raise EntitlementResolutionFailed(f"No RPC endpoint configured for chain {chain_id}")
            self._clients[chain_id] = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={"timeout": self.timeout})
            )
        return self._clients[chain_id]

    async def _balance_of(self, address: str, contract: str, chain_id: str, abi) -> int:
        w3 = self._client(chain_id)
        try:
            token = w3.eth.contract(address=AsyncWeb3.to_checksum_address(contract), abi=abi)
            call = token.functions.balanceOf(AsyncWeb3.to_checksum_address(address)).call()
            return int(await asyncio.wait_for(call, timeout=self.timeout))
        except asyncio.TimeoutError as e:
            raise EntitlementResolutionFailed(f"balanceOf timed out on chain {chain_id}") from e
        except Exception as e:
            # web3 surfaces transport, decoding and contract errors as unrelated types
            raise EntitlementResolutionFailed(f"balanceOf failed on chain {chain_id}: {e}") from e

    async def get_fungible_balance(self, address: str, contract: str, chain_id: str) -> int:
        return await self._balance_of(address, contract, chain_id, ERC20_ABI)

    async def get_collectible_count(self, address: str, contract: str, chain_id: str) -> int:
        return await self._balance_of(address, contract, chain_id, ERC721_ABI)

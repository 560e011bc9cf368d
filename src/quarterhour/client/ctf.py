"""CTF (Conditional Tokens Framework) redemption over web3.

After a market resolves, winning outcome tokens are redeemed for USDC via
redeemPositions() on the CTF contract. Polymarket wallets hold tokens in a
proxy wallet, so the call is wrapped in the proxy's execute() when a proxy
is in use.

Reference: https://github.com/Polymarket/conditional-token-examples-py
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

import structlog
from eth_account import Account
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from web3 import Web3

from ..core.errors import NetworkError, RedemptionError
from .gateway import RedemptionResult, RedemptionStatus

log = structlog.get_logger()


# Polygon mainnet addresses
CTF_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"  # Conditional Tokens Framework
USDC_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"  # USDC.e on Polygon
PROXY_FACTORY_ADDRESS = "0xaB45c5A4B0c941a2F231C04C3f49182e1A254052"
PROXY_INIT_CODE_HASH = "0xd21df8dc65880a8606f09fe0ce3df9b8869287ab0b058be05aa9e8af6330a00b"

PARENT_COLLECTION_ID = bytes(32)  # Root collection

CTF_ABI = [
    {
        "inputs": [
            {"name": "collateralToken", "type": "address"},
            {"name": "parentCollectionId", "type": "bytes32"},
            {"name": "conditionId", "type": "bytes32"},
            {"name": "indexSets", "type": "uint256[]"},
        ],
        "name": "redeemPositions",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

PROXY_ABI = [
    {
        "inputs": [
            {"name": "destination", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "data", "type": "bytes"},
        ],
        "name": "execute",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


def normalize_condition_id(condition_id: str) -> bytes:
    """Condition id hex string (with or without 0x) to bytes32, left-padded."""
    hex_id = condition_id[2:] if condition_id.startswith("0x") else condition_id
    try:
        raw = bytes.fromhex(hex_id.rjust(64, "0")[-64:])
    except ValueError:
        raise RedemptionError(f"Invalid condition_id hex: {condition_id[:20]}...")
    return raw


def derive_proxy_address(eoa_address: str) -> str:
    """CREATE2 address of the Polymarket proxy wallet owned by ``eoa_address``."""
    salt = Web3.solidity_keccak(["address"], [Web3.to_checksum_address(eoa_address)])
    payload = (
        b"\xff"
        + bytes.fromhex(PROXY_FACTORY_ADDRESS[2:])
        + salt
        + bytes.fromhex(PROXY_INIT_CODE_HASH[2:])
    )
    return Web3.to_checksum_address(Web3.keccak(payload)[12:])


class CTFRedeemer:
    """Redeemer implementation calling the CTF contract on Polygon."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        proxy_wallet: Optional[str] = None,
        use_proxy: bool = True,
        ctf_address: str = CTF_ADDRESS,
        usdc_address: str = USDC_ADDRESS,
        gas_price_multiplier: float = 1.2,
        default_gas_limit: int = 300000,
        receipt_timeout: float = 120.0,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """Initialize the redeemer.

        Args:
            rpc_url: Polygon RPC URL.
            private_key: Signing key of the EOA that owns the proxy wallet.
            proxy_wallet: Proxy wallet address; derived from the key when omitted.
            use_proxy: Route the call through the proxy's execute().
            gas_price_multiplier: Multiplier for gas price (1.2 = 20% buffer).
            default_gas_limit: Gas limit used when estimation fails.
        """
        self._rpc_url = rpc_url
        self._private_key = private_key
        self._proxy_wallet = proxy_wallet
        self._use_proxy = use_proxy
        self._ctf_address = ctf_address
        self._usdc_address = usdc_address
        self._gas_price_multiplier = gas_price_multiplier
        self._default_gas_limit = default_gas_limit
        self._receipt_timeout = receipt_timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=2)

        self._w3: Optional[Web3] = None
        self._account = None
        self._ctf_contract = None
        self._log = log.bind(component="ctf_redeemer")

    @property
    def is_connected(self) -> bool:
        return self._w3 is not None

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account else None

    async def connect(self) -> None:
        """Connect to the Polygon RPC and initialize contracts."""
        if self._w3 is not None:
            return

        w3 = Web3(Web3.HTTPProvider(self._rpc_url))
        if not await self._run_sync(w3.is_connected):
            raise NetworkError(f"Failed to connect to RPC: {self._rpc_url}")

        self._account = Account.from_key(self._private_key)
        self._ctf_contract = w3.eth.contract(
            address=Web3.to_checksum_address(self._ctf_address),
            abi=CTF_ABI,
        )
        if self._use_proxy and not self._proxy_wallet:
            self._proxy_wallet = derive_proxy_address(self._account.address)
        self._w3 = w3

        self._log.info(
            "CTF redeemer connected",
            rpc=self._rpc_url,
            address=self._account.address,
            proxy_wallet=self._proxy_wallet if self._use_proxy else None,
        )

    async def close(self) -> None:
        self._w3 = None
        self._account = None
        self._ctf_contract = None

    async def _run_sync(self, func, *args, **kwargs):
        """Run a synchronous function in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, lambda: func(*args, **kwargs)
        )

    def _build_call(self, condition_bytes: bytes, index_set: int) -> Any:
        usdc = Web3.to_checksum_address(self._usdc_address)
        redeem_args = [usdc, PARENT_COLLECTION_ID, condition_bytes, [index_set]]
        if not self._use_proxy:
            return self._ctf_contract.functions.redeemPositions(*redeem_args)

        calldata = self._ctf_contract.encode_abi("redeemPositions", args=redeem_args)
        proxy = self._w3.eth.contract(
            address=Web3.to_checksum_address(self._proxy_wallet),
            abi=PROXY_ABI,
        )
        return proxy.functions.execute(
            Web3.to_checksum_address(self._ctf_address), 0, calldata
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(NetworkError),
        reraise=True,
    )
    async def redeem(self, condition_id: str, index_set: int) -> RedemptionResult:
        """Redeem one outcome of a resolved condition.

        Args:
            condition_id: Market condition ID (hex string, 32 bytes).
            index_set: 1 for the first outcome (UP), 2 for the second (DOWN).

        Returns:
            RedemptionResult with the transaction hash on success.

        Raises:
            NetworkError: For retriable RPC errors (nonce, timeout).
            RedemptionError: For invalid input.
        """
        await self.connect()
        condition_bytes = normalize_condition_id(condition_id)

        self._log.info(
            "Redeeming positions",
            condition_id=condition_id[:16] + "...",
            index_set=index_set,
            wallet=self._account.address,
        )

        try:
            call = self._build_call(condition_bytes, index_set)
            sender = self._account.address
            nonce = await self._run_sync(self._w3.eth.get_transaction_count, sender)
            gas_price = await self._run_sync(lambda: self._w3.eth.gas_price)

            tx = await self._run_sync(
                call.build_transaction,
                {
                    "from": sender,
                    "nonce": nonce,
                    "gasPrice": int(gas_price * self._gas_price_multiplier),
                    "gas": self._default_gas_limit,
                },
            )

            try:
                estimate = await self._run_sync(self._w3.eth.estimate_gas, tx)
                tx["gas"] = int(estimate * 1.2)
            except Exception as e:
                self._log.warning(
                    "Gas estimate failed",
                    error=str(e),
                    using_default=self._default_gas_limit,
                )

            signed = self._account.sign_transaction(tx)
            tx_hash = await self._run_sync(
                self._w3.eth.send_raw_transaction, signed.raw_transaction
            )
            tx_hash_hex = tx_hash.hex()
            self._log.info("Redemption tx submitted", tx_hash=tx_hash_hex)

            receipt = await self._run_sync(
                self._w3.eth.wait_for_transaction_receipt,
                tx_hash,
                timeout=self._receipt_timeout,
            )
        except RedemptionError:
            raise
        except Exception as e:
            error_str = str(e)
            self._log.error(
                "Redemption error",
                condition_id=condition_id[:16] + "...",
                error=error_str,
            )
            if "nonce" in error_str.lower() or "timeout" in error_str.lower():
                raise NetworkError(f"Transient redemption error: {error_str}", cause=e)
            return RedemptionResult(
                status=RedemptionStatus.FAILED,
                condition_id=condition_id,
                index_set=index_set,
                error=error_str,
            )

        if receipt["status"] == 1:
            self._log.info(
                "Redemption successful",
                tx_hash=tx_hash_hex,
                block=receipt["blockNumber"],
            )
            return RedemptionResult(
                status=RedemptionStatus.SUCCESS,
                condition_id=condition_id,
                index_set=index_set,
                tx_hash=tx_hash_hex,
            )

        self._log.error("Redemption tx reverted", tx_hash=tx_hash_hex)
        return RedemptionResult(
            status=RedemptionStatus.FAILED,
            condition_id=condition_id,
            index_set=index_set,
            tx_hash=tx_hash_hex,
            error="Transaction reverted",
        )

"""
LedgerClient — web3 access to the InvoiceNFT, YieldVault, AgentRouter and
Pyth oracle contracts on Mantle.

web3 is synchronous, so every contract call runs in the default executor.
Reads never raise: single records come back as ``None`` and id lists as an
:class:`IdListResult` carrying the error text.  ``record_decision`` raises
and leaves classification and retries to the execution pipeline.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Callable, TypeVar

from web3 import Web3

from core.errors import RejectedOperationError, UnavailableDataError
from core.logger import get_logger
from core.models import Deposit, IdListResult, Invoice, InvoiceStatus, Strategy

T = TypeVar("T")

_UINT256_IN = [{"name": "tokenId", "type": "uint256"}]

INVOICE_NFT_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "getActiveInvoices",
        "outputs": [{"name": "", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": _UINT256_IN,
        "name": "getInvoice",
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "dataCommitment", "type": "bytes32"},
                {"name": "amountCommitment", "type": "bytes32"},
                {"name": "dueDate", "type": "uint256"},
                {"name": "createdAt", "type": "uint256"},
                {"name": "issuer", "type": "address"},
                {"name": "status", "type": "uint8"},
                {"name": "riskScore", "type": "uint8"},
                {"name": "paymentProbability", "type": "uint8"},
            ],
        }],
        "stateMutability": "view",
        "type": "function",
    },
]

YIELD_VAULT_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "getActiveDeposits",
        "outputs": [{"name": "", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": _UINT256_IN,
        "name": "getDeposit",
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "tokenId", "type": "uint256"},
                {"name": "owner", "type": "address"},
                {"name": "strategy", "type": "uint8"},
                {"name": "depositTime", "type": "uint256"},
                {"name": "principal", "type": "uint256"},
                {"name": "accruedYield", "type": "uint256"},
                {"name": "lastYieldUpdate", "type": "uint256"},
                {"name": "active", "type": "bool"},
            ],
        }],
        "stateMutability": "view",
        "type": "function",
    },
]

AGENT_ROUTER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "tokenId", "type": "uint256"},
            {"name": "strategy", "type": "uint8"},
            {"name": "confidence", "type": "uint256"},
            {"name": "reasoning", "type": "string"},
        ],
        "name": "recordDecision",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "agent", "type": "address"}],
        "name": "isAgentAuthorized",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

PYTH_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "id", "type": "bytes32"}],
        "name": "getPriceUnsafe",
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [
                {"name": "price", "type": "int64"},
                {"name": "conf", "type": "uint64"},
                {"name": "expo", "type": "int32"},
                {"name": "publishTime", "type": "uint256"},
            ],
        }],
        "stateMutability": "view",
        "type": "function",
    },
]

# On-chain reasoning strings are gas; keep them short.
_MAX_REASONING_CHARS = 500


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class LedgerClient:
    """Async facade over the Faktory contracts."""

    def __init__(
        self,
        rpc_url: str,
        invoice_nft: str,
        yield_vault: str,
        agent_router: str,
        pyth_oracle: str = "",
        private_key: str = "",
        timeout: float = 15.0,
        w3: Web3 | None = None,
    ) -> None:
        self.log = get_logger("ledger")
        self._w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self._timeout = timeout
        self._invoice_nft = self._contract(invoice_nft, INVOICE_NFT_ABI)
        self._yield_vault = self._contract(yield_vault, YIELD_VAULT_ABI)
        self._agent_router = self._contract(agent_router, AGENT_ROUTER_ABI)
        self._pyth = self._contract(pyth_oracle, PYTH_ABI) if pyth_oracle else None
        self._account = self._w3.eth.account.from_key(private_key) if private_key else None

    @classmethod
    def from_settings(cls, cfg: Any) -> LedgerClient:
        return cls(
            rpc_url=cfg.mantle_rpc_url,
            invoice_nft=cfg.invoice_nft_address,
            yield_vault=cfg.yield_vault_address,
            agent_router=cfg.agent_router_address,
            pyth_oracle=cfg.pyth_oracle_address,
            private_key=cfg.agent_private_key.get_secret_value(),
            timeout=cfg.ledger_request_timeout,
        )

    def _contract(self, address: str, abi: list[dict[str, Any]]) -> Any:
        return self._w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    @property
    def agent_address(self) -> str | None:
        return self._account.address if self._account else None

    @property
    def can_sign(self) -> bool:
        return self._account is not None

    # -- reads ---------------------------------------------------------------

    async def get_active_invoice_ids(self) -> IdListResult:
        return await self._id_list(self._invoice_nft.functions.getActiveInvoices(), "invoices")

    async def get_active_deposit_ids(self) -> IdListResult:
        return await self._id_list(self._yield_vault.functions.getActiveDeposits(), "deposits")

    async def _id_list(self, fn: Any, label: str) -> IdListResult:
        try:
            ids = await self._call(fn.call)
        except Exception as exc:
            self.log.warning("Failed to list active %s.", label, extra={"error": str(exc)})
            return IdListResult(ids=[], error=str(exc) or type(exc).__name__)
        return IdListResult(ids=[str(i) for i in ids])

    async def get_invoice(self, token_id: str) -> Invoice | None:
        try:
            raw = await self._call(self._invoice_nft.functions.getInvoice(int(token_id)).call)
        except Exception as exc:
            self.log.warning(
                "Failed to read invoice.", extra={"token_id": token_id, "error": str(exc)},
            )
            return None
        (data_c, amount_c, due, created, issuer, status, risk, prob) = raw
        return Invoice(
            token_id=token_id,
            data_commitment=_hex(data_c),
            amount_commitment=_hex(amount_c),
            due_date=int(due),
            created_at=int(created),
            issuer=str(issuer),
            status=InvoiceStatus(int(status)),
            risk_score=int(risk),
            payment_probability=int(prob),
        )

    async def get_deposit(self, token_id: str) -> Deposit | None:
        try:
            raw = await self._call(self._yield_vault.functions.getDeposit(int(token_id)).call)
        except Exception as exc:
            self.log.warning(
                "Failed to read deposit.", extra={"token_id": token_id, "error": str(exc)},
            )
            return None
        (tid, owner, strategy, deposit_time, principal, accrued, last_update, active) = raw
        if not active:
            return None
        return Deposit(
            token_id=str(tid),
            owner=str(owner),
            strategy=Strategy(int(strategy)),
            deposit_time=int(deposit_time),
            principal=int(principal),
            accrued_yield=int(accrued),
            last_yield_update=int(last_update),
            active=bool(active),
        )

    async def get_price(self, feed_id: str) -> float | None:
        """USD price from the Pyth oracle, or None when no oracle is configured."""
        if self._pyth is None:
            return None
        try:
            price, _conf, expo, _publish = await self._call(
                self._pyth.functions.getPriceUnsafe(Web3.to_bytes(hexstr=feed_id)).call,
            )
        except Exception as exc:
            raise UnavailableDataError(f"oracle read failed: {exc}") from exc
        if price <= 0:
            return None
        return float(price) * (10 ** int(expo))

    async def is_agent_authorized(self) -> bool:
        if self._account is None:
            return False
        try:
            return bool(await self._call(
                self._agent_router.functions.isAgentAuthorized(self._account.address).call,
            ))
        except Exception as exc:
            self.log.warning("Authorization check failed.", extra={"error": str(exc)})
            return False

    # -- writes --------------------------------------------------------------

    async def record_decision(
        self,
        token_id: str,
        strategy: Strategy,
        confidence: int,
        reasoning: str,
    ) -> str:
        """Submit ``recordDecision`` and wait for the receipt. Returns the tx hash."""
        if self._account is None:
            raise RejectedOperationError("read-only mode: no signing key configured")
        return await self._call(
            self._send_decision, int(token_id), int(strategy), int(confidence),
            reasoning[:_MAX_REASONING_CHARS],
        )

    def _send_decision(self, token_id: int, strategy: int, confidence: int, reasoning: str) -> str:
        account = self._account
        assert account is not None
        fn = self._agent_router.functions.recordDecision(token_id, strategy, confidence, reasoning)
        tx = fn.build_transaction({
            "from": account.address,
            "nonce": self._w3.eth.get_transaction_count(account.address, "pending"),
            "chainId": self._w3.eth.chain_id,
        })
        signed = account.sign_transaction(tx)
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._timeout * 4)
        if receipt["status"] != 1:
            raise RejectedOperationError(f"transaction reverted: {_hex(tx_hash)}")
        return _hex(tx_hash)

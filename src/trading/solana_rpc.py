"""Async Solana JSON-RPC client shared by resolution and settlement.

Every call goes through one RateLimiter so a busy pass cannot burst the
provider. Transport failures and HTTP 429 are retried with backoff;
JSON-RPC errors are raised as ``RpcError`` immediately, carrying the
error ``data`` (preflight simulations put program logs there).
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from src.core.exceptions import RpcError
from src.parsers.rate_limiter import RateLimiter

MAX_RETRIES = 2
RETRY_DELAYS = [1.0, 3.0]


class SolanaRpcClient:
    """Thin typed wrapper over the Solana JSON-RPC methods the daemon uses."""

    def __init__(
        self,
        rpc_url: str,
        *,
        max_rps: float = 8.0,
        timeout: float = 20.0,
        http_client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._rate_limiter = rate_limiter or RateLimiter(max_rps)
        self._request_id = 0

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """Issue one JSON-RPC request and return its ``result``."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES + 1):
            delay = RETRY_DELAYS[min(attempt, len(RETRY_DELAYS) - 1)]
            await self._rate_limiter.acquire()
            try:
                resp = await self._http.post(self._rpc_url, json=payload)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
                logger.debug(f"[RPC] {method} {type(e).__name__}, attempt {attempt + 1}")
                if attempt < MAX_RETRIES:
                    await asyncio.sleep(delay)
                continue

            if resp.status_code == 429:
                retry_after = _retry_after(resp, delay)
                logger.debug(f"[RPC] {method} rate limited, waiting {retry_after}s")
                self._rate_limiter.penalize(retry_after)
                last_error = RpcError(f"{method}: HTTP 429", code=429)
                continue

            if resp.status_code >= 500 and attempt < MAX_RETRIES:
                logger.debug(f"[RPC] {method} HTTP {resp.status_code}, retry in {delay}s")
                last_error = RpcError(f"{method}: HTTP {resp.status_code}", code=resp.status_code)
                await asyncio.sleep(delay)
                continue

            if resp.status_code != 200:
                raise RpcError(f"{method}: HTTP {resp.status_code}", code=resp.status_code)

            try:
                data = resp.json()
            except ValueError as e:
                raise RpcError(f"{method}: invalid JSON response") from e

            error = data.get("error")
            if error:
                raise RpcError(
                    f"{method}: {error.get('message', error)}",
                    code=error.get("code"),
                    data=error.get("data") if isinstance(error.get("data"), dict) else None,
                )
            return data.get("result")

        raise RpcError(f"{method} failed after {MAX_RETRIES + 1} attempts: {last_error}")

    # ─── Account reads ───────────────────────────────────────────────

    async def get_account_info(
        self, address: str, *, encoding: str = "base64"
    ) -> dict | None:
        """Account ``value`` object, or None when the account does not exist."""
        result = await self.call(
            "getAccountInfo",
            [address, {"encoding": encoding, "commitment": "confirmed"}],
        )
        if not result:
            return None
        return result.get("value")

    async def get_multiple_accounts(
        self, addresses: list[str], *, encoding: str = "base64"
    ) -> list[dict | None]:
        if not addresses:
            return []
        result = await self.call(
            "getMultipleAccounts",
            [addresses, {"encoding": encoding, "commitment": "confirmed"}],
        )
        values = (result or {}).get("value") or []
        return list(values) + [None] * (len(addresses) - len(values))

    async def get_program_accounts(
        self, program_id: str, filters: list[dict]
    ) -> list[dict]:
        """Raw ``[{pubkey, account}]`` list for accounts matching ``filters``."""
        result = await self.call(
            "getProgramAccounts",
            [
                program_id,
                {"encoding": "base64", "commitment": "confirmed", "filters": filters},
            ],
        )
        return list(result or [])

    async def get_token_accounts_by_owner(
        self, owner: str, program_id: str
    ) -> list[dict]:
        """jsonParsed token accounts of ``owner`` under one token program."""
        result = await self.call(
            "getTokenAccountsByOwner",
            [
                owner,
                {"programId": program_id},
                {"encoding": "jsonParsed", "commitment": "confirmed"},
            ],
        )
        return list((result or {}).get("value") or [])

    # ─── Transactions ────────────────────────────────────────────────

    async def get_latest_blockhash(self) -> tuple[str, int]:
        """(blockhash, last_valid_block_height) at confirmed commitment."""
        result = await self.call("getLatestBlockhash", [{"commitment": "confirmed"}])
        value = result["value"]
        return value["blockhash"], int(value["lastValidBlockHeight"])

    async def send_transaction(
        self,
        tx_b64: str,
        *,
        skip_preflight: bool = False,
        max_retries: int | None = None,
    ) -> str:
        opts: dict[str, Any] = {
            "encoding": "base64",
            "skipPreflight": skip_preflight,
            "preflightCommitment": "confirmed",
        }
        if max_retries is not None:
            opts["maxRetries"] = max_retries
        result = await self.call("sendTransaction", [tx_b64, opts])
        return str(result)

    async def get_signature_statuses(self, signatures: list[str]) -> list[dict | None]:
        result = await self.call(
            "getSignatureStatuses",
            [signatures, {"searchTransactionHistory": True}],
        )
        return list((result or {}).get("value") or [])

    async def get_transaction(self, signature: str) -> dict | None:
        return await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    # ─── Cluster ─────────────────────────────────────────────────────

    async def get_slot(self) -> int:
        return int(await self.call("getSlot"))

    async def get_block_height(self) -> int:
        return int(await self.call("getBlockHeight"))

    async def close(self) -> None:
        await self._http.aclose()


def _retry_after(resp: httpx.Response, default: float) -> float:
    try:
        return float(resp.headers.get("Retry-After", default))
    except ValueError:
        return default

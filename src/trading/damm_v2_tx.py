"""DAMM v2 instruction building and transaction submission.

Pipeline for every settlement transaction:
  1. Prepend compute budget instructions (limit + priority fee)
  2. Compile MessageV0 against a fresh blockhash from our RPC
  3. Sign with the settlement wallet
  4. sendTransaction (preflight on by default so failures carry program logs)
  5. Poll getSignatureStatuses with resend until confirmed

Failures raise TransactionError with the signature and program logs.
"""

from __future__ import annotations

import asyncio
import base64
import struct

from loguru import logger
from solders.compute_budget import (  # type: ignore[import-untyped]
    set_compute_unit_limit,
    set_compute_unit_price,
)
from solders.hash import Hash  # type: ignore[import-untyped]
from solders.instruction import AccountMeta, Instruction  # type: ignore[import-untyped]
from solders.message import MessageV0  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]
from solders.transaction import VersionedTransaction  # type: ignore[import-untyped]

from src.core.exceptions import RpcError, TransactionError
from src.parsers.meteora.constants import (
    REMOVE_LIQUIDITY_IX_DISCRIMINATOR,
    SWAP_IX_DISCRIMINATOR,
    SYSTEM_PROGRAM_ID,
)
from src.parsers.meteora.models import DammPool, DammPosition
from src.parsers.meteora.pda import (
    ATA_PROGRAM,
    DAMM_V2_PROGRAM,
    derive_associated_token_address,
    derive_event_authority,
    derive_pool_authority,
    derive_position_nft_account,
)
from src.trading.solana_rpc import SolanaRpcClient
from src.trading.wallet import SettlementWallet

# Confirmation polling
CONFIRM_POLL_INTERVAL = 2.0  # seconds
CONFIRM_TIMEOUT = 60  # seconds
RESEND_INTERVAL = 4.0  # seconds

CREATE_ATA_IDEMPOTENT = bytes([1])


def _pk(value: str | Pubkey) -> Pubkey:
    return value if isinstance(value, Pubkey) else Pubkey.from_string(value)


def _ro(key: str | Pubkey) -> AccountMeta:
    return AccountMeta(pubkey=_pk(key), is_signer=False, is_writable=False)


def _rw(key: str | Pubkey) -> AccountMeta:
    return AccountMeta(pubkey=_pk(key), is_signer=False, is_writable=True)


def _u128_le(value: int) -> bytes:
    return value.to_bytes(16, "little")


# ─── Instruction builders ────────────────────────────────────────────


def build_create_ata_idempotent_ix(
    payer: Pubkey, owner: Pubkey, mint: str, token_program: str
) -> Instruction:
    ata = derive_associated_token_address(owner, mint, token_program)
    accounts = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        _rw(ata),
        _ro(owner),
        _ro(mint),
        _ro(SYSTEM_PROGRAM_ID),
        _ro(token_program),
    ]
    return Instruction(ATA_PROGRAM, CREATE_ATA_IDEMPOTENT, accounts)


def build_remove_liquidity_ix(
    *,
    owner: Pubkey,
    pool: DammPool,
    position: DammPosition,
    token_a_account: Pubkey,
    token_b_account: Pubkey,
    token_a_program: str,
    token_b_program: str,
    liquidity_delta: int,
    token_a_amount_threshold: int = 0,
    token_b_amount_threshold: int = 0,
) -> Instruction:
    data = (
        REMOVE_LIQUIDITY_IX_DISCRIMINATOR
        + _u128_le(liquidity_delta)
        + struct.pack("<QQ", token_a_amount_threshold, token_b_amount_threshold)
    )
    accounts = [
        _ro(derive_pool_authority()),
        _rw(pool.pool_address),
        _rw(position.position_address),
        _rw(token_a_account),
        _rw(token_b_account),
        _rw(pool.token_a_vault),
        _rw(pool.token_b_vault),
        _ro(pool.token_a_mint),
        _ro(pool.token_b_mint),
        _ro(derive_position_nft_account(position.nft_mint)),
        AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
        _ro(token_a_program),
        _ro(token_b_program),
        _ro(derive_event_authority()),
        _ro(DAMM_V2_PROGRAM),
    ]
    return Instruction(DAMM_V2_PROGRAM, data, accounts)


def build_swap_ix(
    *,
    payer: Pubkey,
    pool: DammPool,
    input_token_account: Pubkey,
    output_token_account: Pubkey,
    token_a_program: str,
    token_b_program: str,
    amount_in: int,
    minimum_amount_out: int,
) -> Instruction:
    data = SWAP_IX_DISCRIMINATOR + struct.pack("<QQ", amount_in, minimum_amount_out)
    accounts = [
        _ro(derive_pool_authority()),
        _rw(pool.pool_address),
        _rw(input_token_account),
        _rw(output_token_account),
        _rw(pool.token_a_vault),
        _rw(pool.token_b_vault),
        _ro(pool.token_a_mint),
        _ro(pool.token_b_mint),
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        _ro(token_a_program),
        _ro(token_b_program),
        # Optional referral account: the program id stands in for None
        _ro(DAMM_V2_PROGRAM),
        _ro(derive_event_authority()),
        _ro(DAMM_V2_PROGRAM),
    ]
    return Instruction(DAMM_V2_PROGRAM, data, accounts)


# ─── Submission ──────────────────────────────────────────────────────


class TransactionSender:
    """Signs, sends and confirms settlement transactions."""

    def __init__(
        self,
        rpc: SolanaRpcClient,
        wallet: SettlementWallet,
        *,
        compute_unit_limit: int = 400_000,
        priority_fee_microlamports: int = 100_000,
        skip_preflight: bool = False,
        confirm_timeout: float = CONFIRM_TIMEOUT,
    ) -> None:
        self._rpc = rpc
        self._wallet = wallet
        self._cu_limit = compute_unit_limit
        self._priority_fee = priority_fee_microlamports
        self._skip_preflight = skip_preflight
        self._confirm_timeout = confirm_timeout

    async def build_and_sign(self, instructions: list[Instruction]) -> tuple[str, str]:
        """Returns (tx_base64, signature)."""
        all_ixs = [
            set_compute_unit_limit(self._cu_limit),
            set_compute_unit_price(self._priority_fee),
            *instructions,
        ]
        blockhash, _last_valid = await self._rpc.get_latest_blockhash()
        msg = MessageV0.try_compile(
            payer=self._wallet.pubkey,
            instructions=all_ixs,
            address_lookup_table_accounts=[],
            recent_blockhash=Hash.from_string(blockhash),
        )
        tx = VersionedTransaction(msg, [self._wallet.keypair])
        tx_b64 = base64.b64encode(bytes(tx)).decode("ascii")
        return tx_b64, str(tx.signatures[0])

    async def send(self, instructions: list[Instruction], *, label: str) -> str:
        """Submit and confirm; returns the signature or raises TransactionError."""
        try:
            tx_b64, signature = await self.build_and_sign(instructions)
        except RpcError as e:
            raise TransactionError(f"{label}: blockhash fetch failed: {e}") from e

        try:
            await self._rpc.send_transaction(
                tx_b64, skip_preflight=self._skip_preflight, max_retries=5
            )
        except RpcError as e:
            raise TransactionError(
                f"{label}: sendTransaction rejected: {e}",
                signature=signature,
                logs=e.logs,
            ) from e

        logger.debug(f"[SETTLE] {label} sent: {signature}")
        await self._wait_for_confirmation_with_resend(signature, tx_b64, label)
        return signature

    async def _wait_for_confirmation_with_resend(
        self, signature: str, tx_b64: str, label: str
    ) -> None:
        """Poll getSignatureStatuses, re-sending the same signed TX periodically.

        Re-sends share the signature, so duplicates are harmless.
        """
        elapsed = 0.0
        last_resend = 0.0
        while elapsed < self._confirm_timeout:
            try:
                statuses = await self._rpc.get_signature_statuses([signature])
            except RpcError as e:
                logger.debug(f"[SETTLE] getSignatureStatuses failed: {e}")
                statuses = []

            status = statuses[0] if statuses else None
            if status is not None:
                err = status.get("err")
                if err:
                    logs = await self._fetch_logs(signature)
                    raise TransactionError(
                        f"{label}: failed on-chain: {err}", signature=signature, logs=logs
                    )
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    logger.debug(f"[SETTLE] {label} {signature[:16]} confirmed in {elapsed:.1f}s")
                    return

            if elapsed - last_resend >= RESEND_INTERVAL:
                try:
                    await self._rpc.send_transaction(tx_b64, skip_preflight=True, max_retries=0)
                    last_resend = elapsed
                except RpcError as e:
                    logger.debug(f"[SETTLE] Resend of {signature[:16]} failed: {e}")

            await asyncio.sleep(CONFIRM_POLL_INTERVAL)
            elapsed += CONFIRM_POLL_INTERVAL

        raise TransactionError(
            f"{label}: confirmation timeout ({self._confirm_timeout}s)", signature=signature
        )

    async def _fetch_logs(self, signature: str) -> list[str]:
        try:
            tx = await self._rpc.get_transaction(signature)
        except RpcError as e:
            logger.debug(f"[SETTLE] getTransaction failed for {signature[:16]}: {e}")
            return []
        if not tx:
            return []
        return list((tx.get("meta") or {}).get("logMessages") or [])

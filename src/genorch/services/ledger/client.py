"""Ledger client for debiting and refunding the internal currency."""

from enum import Enum
from typing import Any, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from genorch.core.config import Settings
from genorch.services.exceptions import (
    InsufficientFundsError,
    LedgerError,
    NotFoundError,
    TransientError,
)

logger = structlog.get_logger(__name__)


class TransactionType(str, Enum):
    GENERATION = "Generation"
    TRAINING = "Training"


class LedgerClient:
    """Client for the metered currency ledger.

    A debit creates a transaction; a refund reverses it at most once. The ledger
    answers 409 to a repeated refund, which is treated as success here so that
    refunds are idempotent by transaction id.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_wait: Optional[wait_base] = None,
    ):
        """Initialize ledger client.

        Args:
            settings: Application settings (LEDGER_* variables)
            transport: Optional httpx transport (tests inject httpx.MockTransport)
            retry_wait: Backoff between refund attempts (default: exponential with jitter)
        """
        self.base_url = settings.ledger_endpoint.rstrip("/")
        self.timeout = settings.ledger_timeout_seconds
        self.refund_attempts = settings.ledger_refund_attempts
        self.central_account_id = settings.ledger_central_account_id
        self.transport = transport
        self.retry_wait = retry_wait or wait_exponential_jitter(initial=1, max=10, jitter=1)
        self.headers = {"Content-Type": "application/json"}
        if settings.ledger_access_token:
            self.headers["Authorization"] = f"Bearer {settings.ledger_access_token}"

    async def debit(
        self,
        from_account_id: int,
        amount: int,
        type: TransactionType,
        details: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
        to_account_id: Optional[int] = None,
    ) -> str:
        """Move ``amount`` from the user's account to the central account.

        Returns:
            Transaction id of the debit

        Raises:
            InsufficientFundsError: Balance too low (402, or 400 reporting insufficient funds)
            TransientError: Timeout, transport error or 5xx
            LedgerError: Any other rejection
        """
        response = await self._request(
            "POST",
            "/v1/transactions",
            json={
                "fromAccountId": from_account_id,
                "toAccountId": (
                    self.central_account_id if to_account_id is None else to_account_id
                ),
                "amount": amount,
                "type": type.value,
                "details": details or {},
                "description": description,
            },
        )
        if response.status_code == 402 or (
            response.status_code == 400 and "insufficient" in response.text.lower()
        ):
            raise InsufficientFundsError(
                "You don't have enough funds to perform this action."
            )
        self._raise_for_status(response)

        transaction_id = response.json()["transactionId"]
        logger.info(
            "ledger.debit.created",
            transaction_id=transaction_id,
            account_id=from_account_id,
            amount=amount,
            type=type.value,
        )
        return transaction_id

    async def refund(self, transaction_id: str, reason: str) -> None:
        """Reverse a debit. A transaction that was already refunded is a no-op.

        Raises:
            NotFoundError: Unknown transaction id
            TransientError: Timeout, transport error or 5xx
            LedgerError: Any other rejection
        """
        response = await self._request(
            "POST", f"/v1/transactions/{transaction_id}/refund", json={"reason": reason}
        )
        if response.status_code == 409:
            logger.info("ledger.refund.already_refunded", transaction_id=transaction_id)
            return
        if response.status_code == 404:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        self._raise_for_status(response)
        logger.info("ledger.refund.completed", transaction_id=transaction_id, reason=reason)

    async def refund_with_retries(self, transaction_id: str, reason: str) -> bool:
        """Refund with bounded exponential backoff on transient failures.

        Never raises except on cancellation: exhaustion, a permanent rejection or
        any other failure is logged for manual reconciliation and reported as False.

        Returns:
            True if the transaction is refunded (now or previously)
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TransientError),
                stop=stop_after_attempt(self.refund_attempts),
                wait=self.retry_wait,
                before_sleep=lambda retry_state: logger.warning(
                    "ledger.refund.retrying",
                    transaction_id=transaction_id,
                    attempt=retry_state.attempt_number,
                ),
            ):
                with attempt:
                    await self.refund(transaction_id, reason)
        except RetryError as e:
            error = e.last_attempt.exception()
            logger.error(
                "ledger.refund.reconciliation_required",
                transaction_id=transaction_id,
                reason=reason,
                error=str(error),
                attempts=self.refund_attempts,
                important=True,
            )
            return False
        except Exception as e:
            # Permanent rejection, unknown transaction or an unexpected failure
            logger.error(
                "ledger.refund.reconciliation_required",
                transaction_id=transaction_id,
                reason=reason,
                error=str(e),
                error_type=type(e).__name__,
                important=True,
            )
            return False
        return True

    async def get_balance(self, account_id: int) -> int:
        response = await self._request("GET", f"/v1/accounts/{account_id}")
        if response.status_code == 404:
            raise NotFoundError(f"Account {account_id} not found")
        self._raise_for_status(response)
        return int(response.json().get("balance", 0))

    async def _request(
        self, method: str, path: str, json: Optional[dict[str, Any]] = None
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                return await client.request(
                    method, f"{self.base_url}{path}", headers=self.headers, json=json
                )
        except httpx.TimeoutException as e:
            raise TransientError(f"Ledger request timeout after {self.timeout}s: {str(e)}")
        except httpx.HTTPError as e:
            raise TransientError(f"Ledger network error: {str(e)}")

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"Ledger unavailable ({response.status_code}): {response.text}")
        elif response.status_code >= 400:
            raise LedgerError(f"Ledger rejected request ({response.status_code}): {response.text}")

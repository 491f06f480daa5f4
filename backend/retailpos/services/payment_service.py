# Overview: Payment collaborator seam; card/bank/PromptPay approval happens outside the POS.

"""
Payment Processing Seam

WHY: Settlement for delegated methods (card, bank transfer, PromptPay) is done
by an external provider that answers approve/decline. The sale engine asks
for approval before it opens its write transaction and never holds database
locks while waiting on the network.

DESIGN PRINCIPLES:
- One approval attempt per commit; the engine never replays a charge
- The sale id is the idempotency key sent to the provider
- Retry with backoff on transport errors lives here, in the network-facing
  gateway, not in the sale engine
- Every call is bounded by PAYMENT_TIMEOUT_SECONDS
- cancel() is the compensating action when a later step fails
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Protocol

import httpx

from ..errors import PaymentTimeoutError, PaymentUnavailableError

logger = logging.getLogger("retailpos.payments")


def _backoff_total(attempts: int, backoff_base: float) -> float:
    return sum(backoff_base * (2 ** i) for i in range(attempts - 1))


@dataclass(frozen=True)
class PaymentRequest:
    reference: str  # sale id
    method: str
    amount_cents: int
    cashier_id: str | None = None


@dataclass(frozen=True)
class PaymentResult:
    approved: bool
    authorization: str | None = None
    message: str | None = None


class PaymentGateway(Protocol):
    def authorize(self, request: PaymentRequest) -> PaymentResult: ...

    def cancel(self, request: PaymentRequest, result: PaymentResult) -> None: ...


class SimulatedPaymentGateway:
    """Development gateway: approves everything."""

    def authorize(self, request: PaymentRequest) -> PaymentResult:
        return PaymentResult(approved=True, authorization=f"SIM-{request.reference}")

    def cancel(self, request: PaymentRequest, result: PaymentResult) -> None:
        logger.info("Simulated cancel of %s for sale %s", result.authorization or "(by reference)", request.reference)


class HttpPaymentGateway:
    """
    Provider client over HTTP.

    POST {base_url}/payments  {"reference", "method", "amount_cents"}
      -> {"status": "approved" | "declined", "authorization": str, "message": str}
    POST {base_url}/payments/{authorization}/cancel
    POST {base_url}/payments/cancel  {"reference"}   (void by reference, no authorization known)
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        attempts: int = 3,
        backoff_base: float = 0.2,
        transport: httpx.BaseTransport | None = None,
    ):
        self.attempts = max(1, attempts)
        self.backoff_base = backoff_base
        self.timeout = timeout
        self.client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    @classmethod
    def within_budget(cls, base_url: str, *, budget: float, attempts: int = 3, backoff_base: float = 0.2, **kwargs):
        """Size the per-attempt timeout so every retry and backoff fits inside ``budget`` seconds."""
        attempts = max(1, attempts)
        backoff = _backoff_total(attempts, backoff_base)
        per_attempt = max((budget - backoff) / attempts, 0.1)
        return cls(base_url, timeout=per_attempt, attempts=attempts, backoff_base=backoff_base, **kwargs)

    def max_duration(self) -> float:
        """Worst case for one call: every attempt runs to its timeout."""
        return self.timeout * self.attempts + _backoff_total(self.attempts, self.backoff_base)

    def _post(self, path: str, *, json: dict, idempotency_key: str) -> httpx.Response:
        last_exc: Exception | None = None
        for attempt in range(self.attempts):
            try:
                response = self.client.post(path, json=json, headers={"Idempotency-Key": idempotency_key})
                if response.status_code >= 500:
                    raise PaymentUnavailableError(
                        "Payment provider error",
                        details={"status_code": response.status_code},
                    )
                return response
            except (httpx.TransportError, PaymentUnavailableError) as exc:
                last_exc = exc
                if attempt >= self.attempts - 1:
                    break
                logger.info("Payment provider call failed (attempt %d/%d): %s", attempt + 1, self.attempts, exc)
                time.sleep(self.backoff_base * (2 ** attempt))

        if isinstance(last_exc, httpx.TimeoutException):
            raise PaymentTimeoutError("Payment provider timed out") from last_exc
        if isinstance(last_exc, PaymentUnavailableError):
            raise last_exc
        raise PaymentUnavailableError("Payment provider unreachable") from last_exc

    def authorize(self, request: PaymentRequest) -> PaymentResult:
        response = self._post(
            "/payments",
            json={
                "reference": request.reference,
                "method": request.method,
                "amount_cents": request.amount_cents,
            },
            idempotency_key=request.reference,
        )
        try:
            body = response.json()
        except ValueError:
            body = {}

        approved = response.status_code < 400 and body.get("status") == "approved"
        return PaymentResult(
            approved=approved,
            authorization=body.get("authorization"),
            message=body.get("message") or (None if approved else f"HTTP {response.status_code}"),
        )

    def cancel(self, request: PaymentRequest, result: PaymentResult) -> None:
        path = f"/payments/{result.authorization}/cancel" if result.authorization else "/payments/cancel"
        self._post(
            path,
            json={"reference": request.reference},
            idempotency_key=f"cancel-{request.reference}",
        )

    def close(self) -> None:
        self.client.close()


def build_gateway(config) -> PaymentGateway:
    kind = (config.get("PAYMENT_GATEWAY") or "simulated").lower()
    if kind == "http":
        return HttpPaymentGateway.within_budget(
            config["PAYMENT_GATEWAY_URL"],
            budget=float(config.get("PAYMENT_TIMEOUT_SECONDS", 15.0)),
        )
    if kind == "simulated":
        return SimulatedPaymentGateway()
    raise ValueError(f"Unknown PAYMENT_GATEWAY: {kind}")


def authorize_payment(gateway: PaymentGateway, request: PaymentRequest, *, timeout: float) -> PaymentResult:
    """
    Ask the collaborator for approval, giving up after ``timeout`` seconds.

    On timeout the worker thread is abandoned (its late answer is ignored) and
    PaymentTimeoutError is raised; nothing has been written at this point.
    The caller voids the reference with cancel_payment, since the provider may
    still approve it.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="retailpos-payment")
    future = executor.submit(gateway.authorize, request)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        future.cancel()
        logger.warning("Payment authorization timed out for sale %s after %.1fs", request.reference, timeout)
        raise PaymentTimeoutError(
            "Payment provider did not answer in time",
            details={"timeout_seconds": timeout},
        ) from exc
    except (PaymentTimeoutError, PaymentUnavailableError):
        raise
    except Exception as exc:
        logger.exception("Payment authorization failed for sale %s", request.reference)
        raise PaymentUnavailableError("Payment provider failed", details={"error": str(exc)}) from exc
    finally:
        executor.shutdown(wait=False)


def cancel_payment(gateway: PaymentGateway, request: PaymentRequest, result: PaymentResult) -> None:
    """Compensating action after an approved or timed-out authorization; failures are logged, not raised."""
    try:
        gateway.cancel(request, result)
        logger.info("Cancelled payment %s for sale %s", result.authorization or "(by reference)", request.reference)
    except Exception:
        logger.error(
            "Failed to cancel payment %s for sale %s; manual reversal required",
            result.authorization, request.reference,
            exc_info=True,
        )

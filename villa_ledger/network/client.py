"""
Shared HTTP request helper for the payment gateway, PMS and rate provider,
with bounded retries for idempotent calls and latency metrics.
"""

import time
from typing import Any, Dict, Optional, cast

import requests
import structlog

from villa_ledger.errors import ExternalServiceError
from villa_ledger.metrics import api_latency, api_requests

logger = structlog.get_logger(__name__)

MAX_RETRIES = 2
RETRY_DELAY = 0.5
REQUEST_TIMEOUT = 10


def should_retry(res: Optional[requests.Response], err: Optional[Exception]) -> bool:
    """
    Determine whether the request should be retried based on response or error.

    Args:
        res (Optional[requests.Response]): Response object if available.
        err (Optional[Exception]): Exception raised by the request, if any.

    Returns:
        bool: True if the request should be retried, False otherwise.
    """
    if res is not None and res.status_code == 429:
        return True
    if isinstance(err, (requests.Timeout, requests.ConnectionError)):
        return True
    if res is not None and 500 <= res.status_code < 600:
        return True
    return False


def request_json(
    method: str,
    url: str,
    *,
    service: str,
    endpoint: str,
    retry: bool,
    session: Optional[requests.Session] = None,
    max_retries: int = MAX_RETRIES,
    retry_delay: float = RETRY_DELAY,
    timeout: float = REQUEST_TIMEOUT,
    **kwargs: Any,
) -> Dict[str, Any]:
    """
    Send a request and return the decoded JSON body.

    Only idempotent calls (reads, or writes carrying an idempotency key) may
    pass retry=True. Non-idempotent writes are attempted exactly once.

    Args:
        method (str): HTTP method.
        url (str): Absolute URL.
        service (str): External service name for logs and metrics.
        endpoint (str): Logical endpoint name for logs and metrics.
        retry (bool): Retry 429, 5xx, timeouts and connection errors.
        session (Optional[requests.Session]): Session to send with.
        max_retries (int): Retries after the first attempt.
        retry_delay (float): Base delay in seconds, multiplied by the attempt number.
        timeout (float): Per-attempt timeout in seconds.
        **kwargs: Passed to requests (params, json, data, headers, auth).

    Returns:
        Dict[str, Any]: Decoded JSON response.

    Raises:
        ExternalServiceError: On any failure once retries are exhausted.
    """
    sender = session or requests
    retries = 0

    while True:
        res: Optional[requests.Response] = None
        err: Optional[Exception] = None
        start_time = time.time()
        try:
            res = sender.request(method, url, timeout=timeout, **kwargs)
        except requests.RequestException as exc:
            err = exc

        latency = time.time() - start_time
        status_label = str(res.status_code) if res is not None else "error"
        api_requests.labels(service=service, endpoint=endpoint, status_code=status_label).inc()
        api_latency.labels(service=service, endpoint=endpoint).observe(latency)

        if err is None and res is not None and res.status_code < 400:
            try:
                return cast(Dict[str, Any], res.json())
            except ValueError as exc:
                raise ExternalServiceError(
                    f"{service} returned a non-JSON body for {endpoint}",
                    service=service,
                    status_code=res.status_code,
                ) from exc

        if retry and retries < max_retries and should_retry(res, err):
            retries += 1
            delay = retry_delay * retries
            if res is not None and res.status_code == 429:
                delay *= 2
            logger.warning(
                "external_request_retry",
                service=service,
                endpoint=endpoint,
                status_code=status_label,
                attempt=retries,
                delay=delay,
                error=str(err) if err else None,
            )
            time.sleep(delay)
            continue

        logger.error(
            "external_request_failed",
            service=service,
            endpoint=endpoint,
            status_code=status_label,
            retries=retries,
            error=str(err) if err else None,
        )
        raise ExternalServiceError(
            f"{service} request to {endpoint} failed ({status_label})",
            service=service,
            status_code=res.status_code if res is not None else None,
        ) from err

"""HTTP clients for the hosted generation APIs (Replicate, FAL)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx

from services.providers.types import ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 409, 425, 429}
TERMINAL_PREDICTION_STATUSES = {"succeeded", "failed", "canceled"}


def is_transient_status(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


def extract_output_url(payload: Any) -> Optional[str]:
    """Find the first image URL in a provider payload (string, list or nested dict)."""
    if isinstance(payload, str):
        return payload if payload.startswith(("http://", "https://", "data:")) else None
    if isinstance(payload, list):
        for item in payload:
            found = extract_output_url(item)
            if found:
                return found
        return None
    if isinstance(payload, dict):
        for key in ("url", "image_url", "output_url"):
            value = payload.get(key)
            if isinstance(value, str) and value.startswith(("http://", "https://", "data:")):
                return value
        for key in ("image", "images", "output", "data"):
            if key in payload:
                found = extract_output_url(payload[key])
                if found:
                    return found
    return None


async def _send(
    provider: str,
    method: str,
    url: str,
    *,
    headers: Dict[str, str],
    json: Optional[Dict[str, Any]] = None,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.request(method, url, headers=headers, json=json)
    except httpx.TimeoutException as exc:
        raise ProviderError(f"{provider} request timed out: {exc}", provider=provider, transient=True) from exc
    except httpx.HTTPError as exc:
        raise ProviderError(f"{provider} unreachable: {exc}", provider=provider, transient=True) from exc

    if response.status_code >= 400:
        raise ProviderError(
            f"{provider} returned HTTP {response.status_code}: {response.text[:300]}",
            provider=provider,
            transient=is_transient_status(response.status_code),
        )
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderError(f"{provider} returned a non-JSON body", provider=provider) from exc


async def download_bytes(
    url: str,
    *,
    timeout: float = 120.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bytes:
    """Fetch an image from a provider URL."""
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content
    except httpx.HTTPStatusError as exc:
        raise ProviderError(
            f"Download failed with HTTP {exc.response.status_code}",
            provider="download",
            transient=is_transient_status(exc.response.status_code),
        ) from exc
    except httpx.HTTPError as exc:
        raise ProviderError(f"Download failed: {exc}", provider="download", transient=True) from exc


class ReplicateClient:
    """Minimal Replicate predictions client with polling and a hard timeout."""

    BASE_URL = "https://api.replicate.com/v1"

    def __init__(
        self,
        token: str,
        *,
        poll_interval: float = 2.0,
        timeout_seconds: float = 240.0,
        request_timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.token = (token or "").strip()
        self.poll_interval = max(float(poll_interval), 0.0)
        self.timeout_seconds = max(float(timeout_seconds), 0.0)
        self.request_timeout = request_timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}

    async def _call(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await _send(
            "replicate",
            method,
            f"{self.BASE_URL}{path}",
            headers=self._headers(),
            json=json,
            timeout=self.request_timeout,
            transport=self.transport,
        )

    async def create_prediction(self, model: str, model_input: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call("POST", f"/models/{model}/predictions", {"input": model_input})

    async def get_prediction(self, prediction_id: str) -> Dict[str, Any]:
        return await self._call("GET", f"/predictions/{prediction_id}")

    async def cancel_prediction(self, prediction_id: str) -> Dict[str, Any]:
        return await self._call("POST", f"/predictions/{prediction_id}/cancel")

    async def _cancel_quietly(self, prediction_id: str) -> None:
        try:
            await self.cancel_prediction(prediction_id)
        except ProviderError as exc:
            logger.warning("Cancel of prediction %s failed: %s", prediction_id, exc)

    async def run(self, model: str, model_input: Dict[str, Any]) -> str:
        """Create a prediction and poll it to completion, returning the output URL.

        Only the create call can raise a transient error. Once a prediction
        exists, transient poll failures are retried against the same id until
        the hard timeout, and an aborted wait cancels the prediction upstream.
        """
        prediction = await self.create_prediction(model, model_input)
        prediction_id = str(prediction.get("id") or "")
        if not prediction_id:
            raise ProviderError("Replicate did not return a prediction id", provider="replicate")

        started = time.monotonic()
        while str(prediction.get("status") or "") not in TERMINAL_PREDICTION_STATUSES:
            if time.monotonic() - started > self.timeout_seconds:
                await self._cancel_quietly(prediction_id)
                raise ProviderTimeoutError(
                    f"Replicate prediction {prediction_id} timed out after {int(self.timeout_seconds)}s",
                    provider="replicate",
                )
            await asyncio.sleep(self.poll_interval)
            try:
                prediction = await self.get_prediction(prediction_id)
            except ProviderError as exc:
                if exc.transient:
                    logger.warning("Polling prediction %s failed, polling again: %s", prediction_id, exc)
                    continue
                await self._cancel_quietly(prediction_id)
                raise

        status = str(prediction.get("status"))
        if status != "succeeded":
            raise ProviderError(
                f"Replicate prediction {prediction_id} {status}: {prediction.get('error') or 'no detail'}",
                provider="replicate",
            )
        output_url = extract_output_url(prediction.get("output"))
        if not output_url:
            raise ProviderError("Replicate completed but returned no output URL", provider="replicate")
        return output_url


class FalClient:
    """Synchronous-run client for fal.run model endpoints."""

    BASE_URL = "https://fal.run"

    def __init__(
        self,
        key: str,
        *,
        request_timeout: float = 240.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.key = (key or "").strip()
        self.request_timeout = request_timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.key)

    async def run(self, model: str, arguments: Dict[str, Any]) -> str:
        payload = await _send(
            "fal",
            "POST",
            f"{self.BASE_URL}/{model}",
            headers={"Authorization": f"Key {self.key}", "Content-Type": "application/json"},
            json=arguments,
            timeout=self.request_timeout,
            transport=self.transport,
        )
        output_url = extract_output_url(payload)
        if not output_url:
            raise ProviderError(f"FAL model {model} returned no image URL", provider="fal")
        return output_url

# src/keepalive/model_warmer.py

from __future__ import annotations

import asyncio
import time
from typing import Optional

from common.config import ProxyConfig
from common.errors import (
    BackendResponseError,
    BackendUnavailableError,
    ProxyError,
    WarmupError,
)
from common.logging_utils import log_event
from common.schemas.warmup_state import WarmupState
from gateway.backend_client import OllamaBackendClient, model_matches
from gateway.payload_augmenter import default_inference_options


WARMUP_PROMPT = "Hi"
WARMUP_NUM_PREDICT = 10

KEEPALIVE_PROMPT = "ping"
KEEPALIVE_NUM_PREDICT = 1


class ModelWarmer:
    """
    Loads the configured model into Ollama at startup and keeps it resident.

    States: STARTING → WARMING → KEEPALIVE_ACTIVE, or STARTING → WARMING →
    WARMUP_FAILED.
    stop() moves any state to STOPPED. Failures are logged and never raised
    to the caller; the gateway keeps serving either way.
    """

    def __init__(self, config: ProxyConfig, backend: OllamaBackendClient):
        self.config = config
        self.backend = backend
        self.model_name = config.MODEL_NAME
        self.state = WarmupState.STARTING
        self._keepalive_task: Optional[asyncio.Task] = None

    # --------------------------------------------------
    # State tracking
    # --------------------------------------------------
    def set_state(self, new_state: WarmupState):
        self.state = new_state
        log_event(
            "warmup_state_change",
            model=self.model_name,
            extra={"state": new_state.value},
        )

    @property
    def keepalive_running(self) -> bool:
        return self._keepalive_task is not None and not self._keepalive_task.done()

    # --------------------------------------------------
    # Startup
    # --------------------------------------------------
    async def start(self, delay_s: float = 0.0) -> bool:
        """Run warmup once; on success start the keepalive loop."""
        if delay_s > 0:
            await asyncio.sleep(delay_s)

        if await self.warmup():
            log_event("gateway_ready", model=self.model_name)
            self.start_keepalive()
            return True

        log_event(
            "gateway_degraded",
            model=self.model_name,
            extra={"detail": "warmup failed; first requests may be slow"},
            level="warning",
        )
        return False

    async def warmup(self) -> bool:
        self.set_state(WarmupState.WARMING)
        try:
            await self._check_backend()
            await self._check_model_installed()
            await self._preload_model()
        except WarmupError as e:
            log_event(
                "warmup_failed",
                model=self.model_name,
                error=str(e),
                extra={"hint": e.hint} if e.hint else None,
                level="error",
            )
            self.set_state(WarmupState.WARMUP_FAILED)
            return False

        return True

    async def _check_backend(self):
        timeout_s = self.config.HEALTH_TIMEOUT_MS / 1000
        try:
            version = await self.backend.version(timeout_s=timeout_s)
        except ProxyError as e:
            raise self._to_warmup_error("backend liveness check failed", e) from e

        log_event(
            "warmup_backend_alive",
            extra={"backend_url": self.config.BACKEND_URL, "version": version},
        )

    async def _check_model_installed(self):
        timeout_s = self.config.HEALTH_TIMEOUT_MS / 1000
        try:
            names = await self.backend.list_models(timeout_s=timeout_s)
        except ProxyError as e:
            raise self._to_warmup_error("model listing failed", e) from e

        if not any(model_matches(name, self.model_name) for name in names):
            log_event(
                "warmup_model_not_found",
                model=self.model_name,
                extra={"installed": ",".join(names) or "none"},
                level="warning",
            )
            raise WarmupError(
                f"model {self.model_name} not found",
                hint=f"pull it first with: ollama pull {self.model_name}",
            )

        log_event("warmup_model_found", model=self.model_name)

    async def _preload_model(self):
        payload = self._generation_payload(WARMUP_PROMPT, WARMUP_NUM_PREDICT)

        log_event(
            "warmup_generation_started",
            model=self.model_name,
            extra={"detail": "this may take 30-60 seconds"},
        )
        start_time = time.monotonic()

        try:
            data = await self.backend.generate(
                payload, timeout_s=self.config.WARMUP_TIMEOUT_MS / 1000
            )
        except ProxyError as e:
            raise self._to_warmup_error("warmup generation failed", e) from e

        elapsed = time.monotonic() - start_time
        log_event(
            "warmup_completed",
            model=self.model_name,
            extra={
                "duration_s": f"{elapsed:.1f}",
                "warmup_reply": str(data.get("response", "")).strip(),
            },
        )

    # --------------------------------------------------
    # Keepalive
    # --------------------------------------------------
    def start_keepalive(self) -> asyncio.Task:
        if self.keepalive_running:
            return self._keepalive_task

        interval_s = self.config.KEEPALIVE_INTERVAL_MS / 1000
        log_event(
            "keepalive_started",
            model=self.model_name,
            extra={"interval_s": f"{interval_s:g}"},
        )
        self._keepalive_task = asyncio.create_task(
            self._keepalive_loop(interval_s), name="ollama-keepalive"
        )
        self.set_state(WarmupState.KEEPALIVE_ACTIVE)
        return self._keepalive_task

    async def _keepalive_loop(self, interval_s: float):
        while True:
            await asyncio.sleep(interval_s)
            await self.ping()

    async def ping(self) -> bool:
        """One keepalive generation. Never raises for backend failures."""
        payload = self._generation_payload(KEEPALIVE_PROMPT, KEEPALIVE_NUM_PREDICT)
        try:
            await self.backend.generate(
                payload, timeout_s=self.config.KEEPALIVE_TIMEOUT_MS / 1000
            )
        except ProxyError as e:
            log_event(
                "keepalive_ping_failed",
                model=self.model_name,
                error=e.message or e.error,
                level="warning",
            )
            return False

        log_event("keepalive_ping_ok", model=self.model_name)
        return True

    async def stop(self):
        task = self._keepalive_task
        self._keepalive_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.set_state(WarmupState.STOPPED)

    # --------------------------------------------------
    # Helpers
    # --------------------------------------------------
    def _generation_payload(self, prompt: str, num_predict: int) -> dict:
        options = default_inference_options()
        options["num_predict"] = num_predict
        return {
            "model": self.model_name,
            "prompt": prompt,
            "stream": False,
            "options": options,
        }

    def _to_warmup_error(self, what: str, err: ProxyError) -> WarmupError:
        hint = None
        if isinstance(err, BackendUnavailableError):
            hint = "make sure Ollama is running: ollama serve"
        elif isinstance(err, BackendResponseError) and err.status_code == 404:
            hint = f"model not found; pull it with: ollama pull {self.model_name}"
        return WarmupError(f"{what}: {err.message or err.error}", hint=hint)

# src/gateway/payload_augmenter.py

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple

from common.errors import InvalidPayloadError


# Tuned for full GPU offload on a single-card host
DEFAULT_INFERENCE_OPTIONS: Dict[str, Any] = {
    "num_ctx": 4096,
    "num_batch": 512,
    "num_gpu": -1,
    "main_gpu": 0,
    "use_mmap": True,
    "num_thread": 8,
    "temperature": 0.7,
    "top_k": 40,
    "top_p": 0.9,
    "repeat_penalty": 1.1,
    "penalize_newline": False,
}

AUGMENTED_PATH_MARKERS = ("/generate", "/chat")


def default_inference_options() -> Dict[str, Any]:
    """Fresh copy of the defaults, safe for callers to mutate."""
    return dict(DEFAULT_INFERENCE_OPTIONS)


def should_augment(method: str, path: str) -> bool:
    if method.upper() != "POST":
        return False
    return any(marker in path for marker in AUGMENTED_PATH_MARKERS)


def merge_options(caller_options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Shallow merge: defaults first, caller keys win."""
    merged = default_inference_options()
    if caller_options:
        merged.update(caller_options)
    return merged


def augment_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply the generate/chat policy to a decoded body and return a new dict:
    - `stream` is forced to False unless the caller sent exactly `true`.
    - `options` becomes the defaults overridden key-by-key by the caller.
    """
    augmented = dict(payload)

    if augmented.get("stream") is not True:
        augmented["stream"] = False

    caller_options = augmented.get("options")
    if caller_options is not None and not isinstance(caller_options, dict):
        raise InvalidPayloadError("'options' must be a JSON object")

    augmented["options"] = merge_options(caller_options)
    return augmented


def prepare_body(method: str, path: str, body: bytes) -> Tuple[bytes, bool, Optional[Dict[str, Any]]]:
    """
    Decide what goes to the backend for an inbound body.

    Returns
    -------
    body : bytes
        Bytes to send. Untouched for every route that is not augmented.
    stream : bool
        Whether the effective payload asks for a streamed response.
    payload : dict or None
        The augmented payload, or None when the body passed through as-is.
    """
    if not should_augment(method, path):
        return body, _requests_stream(body), None

    if not body:
        payload: Any = {}
    else:
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise InvalidPayloadError(str(e)) from e

    if not isinstance(payload, dict):
        raise InvalidPayloadError("request body must be a JSON object")

    augmented = augment_payload(payload)
    return json.dumps(augmented).encode("utf-8"), augmented["stream"] is True, augmented


def _requests_stream(body: bytes) -> bool:
    """
    Pass-through bodies are not rewritten, but an explicit `"stream": true`
    (e.g. on /api/pull) still selects the streaming relay.
    """
    if not body or b"stream" not in body:
        return False
    try:
        payload = json.loads(body)
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("stream") is True

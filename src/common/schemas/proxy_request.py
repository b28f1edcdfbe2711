from dataclasses import dataclass, field
from typing import AsyncIterator, Optional
import uuid

@dataclass
class ProxyRequest:
    """
    Internal representation of one inbound call to be relayed to Ollama.
    Built by the gateway after authentication; `body` holds the raw bytes
    exactly as received. Blob uploads set `body_stream` instead so large
    files are relayed without being held in memory.
    """

    method: str
    path: str
    query_string: str = ""
    body: bytes = b""
    body_stream: Optional[AsyncIterator[bytes]] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def path_with_query(self) -> str:
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path

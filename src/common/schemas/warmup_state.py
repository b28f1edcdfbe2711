from enum import Enum

class WarmupState(Enum):
    STARTING = "STARTING"
    WARMING = "WARMING"
    WARMUP_FAILED = "WARMUP_FAILED"
    KEEPALIVE_ACTIVE = "KEEPALIVE_ACTIVE"
    STOPPED = "STOPPED"

from .async_utils import guarded_call, spawn_background, wait_with_stop
from .conversions import to_bool, to_csv_tuple, to_float, to_int
from .logging import log_event, mask_secret, redact_url

__all__ = [
    "guarded_call",
    "log_event",
    "mask_secret",
    "redact_url",
    "spawn_background",
    "to_bool",
    "to_csv_tuple",
    "to_float",
    "to_int",
    "wait_with_stop",
]

from .functions import (
    decode_base64_file,
    epoch_millis_to_datetime,
    get_random_string,
    get_yaml_item_value,
    to_utc_datetime,
)
from .safe_logger import SafeLogger

__all__ = [
    "SafeLogger",
    "decode_base64_file",
    "epoch_millis_to_datetime",
    "get_random_string",
    "get_yaml_item_value",
    "to_utc_datetime",
]

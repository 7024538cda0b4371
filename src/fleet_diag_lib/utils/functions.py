import datetime
import random
import string

import pytz
from base64io import Base64IO
from dateutil import parser
from dateutil.parser import ParserError

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=pytz.utc)


def decode_base64_file(source_filename: str, destination_filename: str):
    """
    Decodes a base64 file while it's read (no memory allocation).
    Suitable for big file conversion.

    :param source_filename: source base64 encoded file
    :param destination_filename: destination decoded file
    """
    with open(source_filename, "rb") as encoded_source, open(
        destination_filename, "wb"
    ) as target:
        with Base64IO(encoded_source) as source:
            for line in source:
                target.write(line)


def epoch_millis_to_datetime(epoch_millis: int) -> datetime.datetime:
    """
    Converts an epoch timestamp in milliseconds to an UTC
    datetime without losing the sub-second part

    :param epoch_millis: milliseconds since the epoch
    :return: timezone aware UTC datetime
    """
    return EPOCH + datetime.timedelta(milliseconds=epoch_millis)


def to_utc_datetime(value: any) -> datetime.datetime:
    """
    Normalizes a timestamp to a timezone aware UTC datetime.
    Accepts datetime objects, epoch seconds and any date string
    supported by dateutil.parser. Naive values are considered UTC.

    :param value: the timestamp to normalize
    :return: timezone aware UTC datetime
    """
    if isinstance(value, bool):
        raise Exception(f"invalid timestamp: {value}")
    if isinstance(value, (int, float)):
        return EPOCH + datetime.timedelta(seconds=value)
    if isinstance(value, str):
        try:
            value = parser.parse(value)
        except (ParserError, OverflowError):
            raise Exception(f"impossible to parse date: {value}")
    if not isinstance(value, datetime.datetime):
        raise Exception(f"invalid timestamp: {value}")
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value.astimezone(pytz.utc)


def get_yaml_item_value(cont: dict[str, any], item: str, default: any) -> any:
    """
    Sets the value of item from yaml.

    :param cont: dict of all items from yaml file
    :param item: name of the item in scenario yaml
    :param default: default value
    :return: item value - if not specified the default value is returned
    """
    return default if cont.get(item) is None else cont.get(item)


def get_random_string(length: int) -> str:
    """
    Returns a random lowercase string of lenght `length`

    :param length: the lenght of the string
    :return: the random string
    """
    letters = string.ascii_lowercase
    return "".join(random.choice(letters) for i in range(length))

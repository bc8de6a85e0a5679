import datetime
import math
import random
import re
import string
from typing import Optional, Union

_ID_CHARS = string.ascii_letters + string.digits
_BASE36 = string.digits + string.ascii_lowercase

FILE_SIZE_UNITS = ['Bytes', 'KB', 'MB', 'GB', 'TB']


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def format_date(value: Union[str, datetime.datetime, None], now: Optional[datetime.datetime] = None) -> str:
    """Human friendly relative date: 'Just now', '5 minutes ago', ... then the plain date."""
    if not value:
        return ''
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value.replace('Z', '+00:00'))
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    now = now or utcnow()
    seconds = int((now - value).total_seconds())
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if seconds < 60:
        return 'Just now'
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    if days < 7:
        return f"{days} day{'s' if days > 1 else ''} ago"
    return value.date().isoformat()


def format_file_size(size: int) -> str:
    if size <= 0:
        return '0 Bytes'
    i = min(int(math.floor(math.log(size, 1024))), len(FILE_SIZE_UNITS) - 1)
    value = round(size / (1024 ** i), 2)
    # 1.0 KB reads as 1 KB
    text = f'{value:g}'
    return f'{text} {FILE_SIZE_UNITS[i]}'


def generate_id(length: int = 8) -> str:
    return ''.join(random.choice(_ID_CHARS) for _ in range(length))


def generate_base36_id(length: int = 8) -> str:
    return ''.join(random.choice(_BASE36) for _ in range(length))


def slug_for_filename(text: str) -> str:
    """Replace every non-alphanumeric character with '-' (no collapsing)."""
    return re.sub(r'[^a-zA-Z0-9]', '-', text or '')

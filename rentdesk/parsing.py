"""Helpers for pulling typed values out of JSON or form payloads.

Blank strings are treated as missing, the same way an empty form field is.
Anything that cannot be converted raises :class:`ValidationError` naming the
field.
"""

from datetime import date, datetime, time

from .errors import ValidationError

_TRUE = {'1', 'true', 'yes', 'on'}


def _raw(data, key):
    value = data.get(key) if data else None
    if isinstance(value, str):
        value = value.strip()
        if value == '':
            return None
    return value


def get_float(data, key, default=None, minimum=None):
    value = _raw(data, key)
    if value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number", field=key) from None
    if minimum is not None and number < minimum:
        raise ValidationError(f"{key} must be at least {minimum:g}", field=key)
    return number


def get_int(data, key, default=None, minimum=None):
    value = _raw(data, key)
    if value is None:
        return default
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a whole number", field=key) from None
    if minimum is not None and number < minimum:
        raise ValidationError(f"{key} must be at least {minimum}", field=key)
    return number


def get_bool(data, key, default=False):
    value = _raw(data, key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).lower() in _TRUE


def get_text(data, key, default=None):
    value = _raw(data, key)
    return default if value is None else str(value)


def get_choice(data, key, choices, default=None):
    if isinstance(choices, str):
        # a list setting given as "CASH,CARD" in the environment
        choices = [c.strip() for c in choices.split(',') if c.strip()]
    value = get_text(data, key, default)
    if value is not None and value not in choices:
        raise ValidationError(f"{key} must be one of {', '.join(choices)}", field=key)
    return value


def parse_datetime(value, field='date'):
    """Parse an ISO date or datetime string.  Aware values become naive UTC."""
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date or datetime", field=field) from None
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed


def get_datetime(data, key, default=None):
    value = _raw(data, key)
    if value is None:
        return default
    return parse_datetime(value, key)


def get_moment(data, prefix, default=None):
    """Read ``<prefix>`` as a datetime, or ``<prefix>_date`` plus
    ``<prefix>_time`` (``HH:MM``) as the admin form sends them."""
    whole = get_datetime(data, prefix)
    if whole is not None:
        return whole
    day = _raw(data, f"{prefix}_date")
    clock = _raw(data, f"{prefix}_time")
    if day is None or clock is None:
        return default
    return parse_datetime(f"{day}T{clock}", prefix)


def get_id_list(data, key):
    value = data.get(key) if data else None
    if not value:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    try:
        return [int(v) for v in value]
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a list of ids", field=key) from None

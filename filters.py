"""Formatting filters for pages: ``{{ user.created_at|format_date('%d %b %Y') }}``."""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from jinja2 import Undefined
from jinja2.exceptions import FilterArgumentError


def _missing(value):
    return value is None or isinstance(value, Undefined) or value == ''


def format_date(value, pattern='%Y-%m-%d %H:%M:%S'):
    """Format a datetime, epoch milliseconds or an ISO timestamp string."""
    if _missing(value):
        return ''
    if isinstance(value, (datetime, date)):
        moment = value
    elif isinstance(value, (int, float)):
        moment = datetime.fromtimestamp(value / 1000)
    else:
        text = str(value).strip()
        try:
            moment = datetime.fromtimestamp(int(text) / 1000)
        except ValueError:
            # sqlite stores timestamps as 'YYYY-MM-DD HH:MM:SS'
            try:
                moment = datetime.fromisoformat(text)
            except ValueError as exc:
                raise FilterArgumentError(f'Error formatting date: {value!r}') from exc
    return moment.strftime(pattern)


def format_number(value, pattern=',.2f'):
    if _missing(value):
        return '0'
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        number = value
    else:
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise FilterArgumentError(f'Error formatting number: {value!r}') from exc
    try:
        return format(number, pattern)
    except ValueError as exc:
        raise FilterArgumentError(f'Invalid number pattern: {pattern!r}') from exc


def register_filters(env):
    env.filters['format_date'] = format_date
    env.filters['format_number'] = format_number

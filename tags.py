"""
SQL tags available to pages.

Usage in a template::

    {% query var="users" table="users" %}
      SELECT * FROM users WHERE active = TRUE
    {% endquery %}

    {% update var="rows_affected" %}
      UPDATE users SET last_login = CURRENT_TIMESTAMP WHERE id = 1
    {% endupdate %}

    {% execute %}
      CREATE TABLE IF NOT EXISTS temp (id INT, name VARCHAR(100))
    {% endexecute %}
"""

import logging
import sqlite3
from dataclasses import dataclass
from functools import partial

from errors import PoolError, TagError, TagErrorKind, TemplateError, TemplateErrorKind
from scope import Scope

logger = logging.getLogger(__name__)


@dataclass
class TagInvocation:
    name: str
    attributes: dict
    body: str
    scope: Scope


class SqlTag:
    failure = None
    # Attributes whose value names a variable; must be literals in templates
    binding_attributes = ()

    def __init__(self, database):
        self.database = database

    def bindings(self, attributes):
        """Names this tag will bind, given its attributes."""
        return []

    def validate(self, invocation):
        pass

    def body_sql(self, invocation):
        sql = (invocation.body or '').strip()
        if not sql:
            raise TagError(TagErrorKind.EMPTY_BODY,
                           f'SQL statement is required in <{invocation.name}> body',
                           tag=invocation.name)
        return sql

    def execute(self, conn, sql, invocation):
        raise NotImplementedError

    def bind(self, invocation, result):
        pass

    def run(self, invocation):
        # Validation happens before a connection is leased
        self.validate(invocation)
        sql = self.body_sql(invocation)
        try:
            with self.database.connection() as conn:
                result = self.execute(conn, sql, invocation)
        except (PoolError, sqlite3.Error) as exc:
            raise TagError(self.failure, f'Error executing <{invocation.name}>: {exc}',
                           tag=invocation.name, cause=exc) from exc
        self.bind(invocation, result)


def _attribute(attributes, name):
    value = attributes.get(name)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class QueryHandler(SqlTag):
    failure = TagErrorKind.QUERY_FAILED
    binding_attributes = ('var',)

    def bindings(self, attributes):
        var = _attribute(attributes, 'var')
        if var is None:
            return []
        return [var, f'{var}_count']

    def validate(self, invocation):
        if _attribute(invocation.attributes, 'var') is None:
            raise TagError(TagErrorKind.MISSING_ATTRIBUTE, "'var' attribute is required",
                           tag=invocation.name)

    def execute(self, conn, sql, invocation):
        table = _attribute(invocation.attributes, 'table')
        logger.debug('Query into %s (table=%s)', invocation.attributes.get('var'), table)
        cursor = conn.execute(sql)
        try:
            # Column labels are lower-cased
            return [{key.lower(): row[key] for key in row.keys()} for row in cursor.fetchall()]
        finally:
            cursor.close()

    def bind(self, invocation, rows):
        var = _attribute(invocation.attributes, 'var')
        invocation.scope[var] = rows
        invocation.scope[f'{var}_count'] = len(rows)


class UpdateHandler(SqlTag):
    failure = TagErrorKind.UPDATE_FAILED
    binding_attributes = ('var',)

    def bindings(self, attributes):
        var = _attribute(attributes, 'var')
        return [var] if var else []

    def execute(self, conn, sql, invocation):
        cursor = conn.execute(sql)
        try:
            return cursor.rowcount
        finally:
            cursor.close()

    def bind(self, invocation, rows_affected):
        var = _attribute(invocation.attributes, 'var')
        if var:
            invocation.scope[var] = rows_affected


class ExecuteHandler(SqlTag):
    failure = TagErrorKind.EXECUTE_FAILED

    def execute(self, conn, sql, invocation):
        conn.executescript(sql)


class TagRegistry:
    def __init__(self):
        self._factories = {}

    def register(self, name, factory):
        if not name.isidentifier():
            raise ValueError(f'Invalid tag name: {name!r}')
        if name in self._factories:
            raise ValueError(f'Tag already registered: {name}')
        self._factories[name] = factory

    def resolve(self, name):
        try:
            return self._factories[name]
        except KeyError:
            raise TemplateError(TemplateErrorKind.UNKNOWN_TAG,
                                f'Unknown tag: {name}') from None

    def names(self):
        return sorted(self._factories)

    def __contains__(self, name):
        return name in self._factories


def default_registry(database):
    registry = TagRegistry()
    registry.register('query', partial(QueryHandler, database))
    registry.register('update', partial(UpdateHandler, database))
    registry.register('execute', partial(ExecuteHandler, database))
    return registry

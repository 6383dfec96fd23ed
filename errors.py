"""
Error types raised by the pool, the tag handlers and the renderer.

Every error carries a ``kind`` and, when it wraps a lower-level failure,
a ``cause`` that is also chained as ``__cause__``.
"""

from enum import Enum


class PoolErrorKind(str, Enum):
    EXHAUSTED = 'Exhausted'
    CONNECTION_FAILED = 'ConnectionFailed'
    CLOSED = 'Closed'


class TagErrorKind(str, Enum):
    MISSING_ATTRIBUTE = 'MissingAttribute'
    EMPTY_BODY = 'EmptyBody'
    QUERY_FAILED = 'QueryFailed'
    UPDATE_FAILED = 'UpdateFailed'
    EXECUTE_FAILED = 'ExecuteFailed'


class TemplateErrorKind(str, Enum):
    NOT_FOUND = 'NotFound'
    UNKNOWN_TAG = 'UnknownTag'
    TAG_EXECUTION_FAILED = 'TagExecutionFailed'
    NESTING_TOO_DEEP = 'NestingTooDeep'
    SYNTAX_ERROR = 'SyntaxError'
    EVALUATION_FAILED = 'EvaluationFailed'


class AppError(Exception):
    def __init__(self, kind, message, cause=None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause

    @property
    def summary(self):
        """Kind names along the cause chain, e.g. ``TagExecutionFailed: QueryFailed``."""
        kinds = []
        error = self
        while isinstance(error, AppError):
            kinds.append(error.kind.value)
            error = error.cause
        return ': '.join(kinds)

    def __str__(self):
        return f'{self.kind.value}: {self.message}'


class PoolError(AppError):
    pass


class TagError(AppError):
    def __init__(self, kind, message, tag=None, cause=None):
        super().__init__(kind, message, cause)
        self.tag = tag


class TemplateError(AppError):
    def __init__(self, kind, message, template=None, cause=None):
        super().__init__(kind, message, cause)
        self.template = template


class ConfigError(Exception):
    pass

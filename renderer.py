"""
Jinja2 rendering for pages.

Pages are plain Jinja2 templates extended with the tags of a
:class:`tags.TagRegistry`. A tag compiles to an assignment of the names its
handler binds, so results are visible to the rest of the page like any
``{% set %}`` variable::

    {% query var="users" %}SELECT * FROM users{% endquery %}
    {{ users_count }} users

Attribute values are Jinja2 expressions evaluated at render time; the
attribute naming the result variable must be a string literal. The tag body
is SQL text in which ``{{ }}`` expressions are substituted (unescaped);
statement blocks are not allowed inside a body.
"""

import logging
import re

from jinja2 import (ChainableUndefined, Environment, FileSystemLoader, Template,
                    TemplateNotFound, TemplateSyntaxError, nodes, select_autoescape)
from jinja2.exceptions import TemplateError as JinjaTemplateError
from jinja2.ext import Extension

from errors import TagError, TemplateError, TemplateErrorKind
from filters import register_filters
from scope import Scope
from tags import TagInvocation

logger = logging.getLogger(__name__)

INCLUDE_DEPTH_VAR = '__include_depth__'


class TagLibraryExtension(Extension):
    """Exposes every tag of ``environment.tag_registry`` as a block tag."""

    def __init__(self, environment):
        super().__init__(environment)
        self.tags = set(environment.tag_registry.names())

    def parse(self, parser):
        token = next(parser.stream)
        tag_name = token.value
        lineno = token.lineno
        handler = self.environment.tag_registry.resolve(tag_name)()

        # name=expression pairs, commas optional
        attributes = []
        seen = set()
        while parser.stream.current.type != 'block_end':
            if attributes:
                parser.stream.skip_if('comma')
            key = parser.stream.expect('name')
            if key.value in seen:
                parser.fail(f"Duplicate attribute '{key.value}' on {tag_name}", key.lineno)
            seen.add(key.value)
            parser.stream.expect('assign')
            attributes.append((key.value, parser.parse_expression(), key.lineno))

        literals = {}
        for key, value, key_lineno in attributes:
            if isinstance(value, nodes.Const):
                literals[key] = value.value
            elif key in handler.binding_attributes:
                parser.fail(f"'{key}' attribute of {tag_name} must be a string literal", key_lineno)

        names = handler.bindings(literals)
        for name in names:
            if not name.isidentifier():
                parser.fail(f'{tag_name} cannot bind invalid variable name {name!r}', lineno)

        body = parser.parse_statements((f'name:end{tag_name}',), drop_needle=True)
        parts = []
        for node in body:
            if not isinstance(node, nodes.Output):
                parser.fail(f'{tag_name} body must be SQL text, not nested statements', node.lineno)
            parts.extend(node.nodes)

        call = self.call_method('_invoke', [
            nodes.Const(tag_name),
            nodes.Dict([nodes.Pair(nodes.Const(key), value) for key, value, _ in attributes]),
            nodes.List(parts),
            nodes.ContextReference(),
        ], lineno=lineno)

        if not names:
            return nodes.ExprStmt(call).set_lineno(lineno)
        target = nodes.Tuple([nodes.Name(name, 'store') for name in names], 'store')
        return nodes.Assign(target, call).set_lineno(lineno)

    def _invoke(self, tag_name, attributes, parts, context):
        handler = self.environment.tag_registry.resolve(tag_name)()
        body = ''.join(str(part) for part in parts)
        invocation = TagInvocation(tag_name, attributes, body, Scope(parent=context.get_all()))
        handler.run(invocation)

        names = handler.bindings(attributes)
        if not names:
            return None
        return tuple(
            invocation.scope.local(name, self.environment.undefined(name=name))
            for name in names
        )


class PageTemplate(Template):
    # Every include/import creates a new context; count them
    def new_context(self, vars=None, shared=False, locals=None):
        context = super().new_context(vars, shared, locals)
        depth = context.get(INCLUDE_DEPTH_VAR, 0) + 1
        limit = self.environment.max_include_depth
        if depth > limit:
            raise TemplateError(TemplateErrorKind.NESTING_TOO_DEEP,
                                f'Template nesting exceeds {limit} levels at {self.name}',
                                template=self.name)
        context.vars[INCLUDE_DEPTH_VAR] = depth
        return context


class PageEnvironment(Environment):
    template_class = PageTemplate


UNKNOWN_TAG_MESSAGE = re.compile(r"unknown tag '([^']+)'")

# Jinja's own block tags; a misplaced one is a syntax error, not an unknown tag
BUILTIN_TAGS = frozenset([
    'for', 'if', 'elif', 'else', 'block', 'extends', 'print', 'macro',
    'include', 'from', 'import', 'set', 'with', 'autoescape', 'call',
    'filter', 'raw', 'do', 'break', 'continue',
])


def _compile_error(exc, template, tag_names):
    message = exc.message or ''
    kind = TemplateErrorKind.SYNTAX_ERROR
    match = UNKNOWN_TAG_MESSAGE.search(message)
    if match:
        name = match.group(1)
        base = name[3:] if name.startswith('end') else name
        if name not in tag_names and base not in tag_names and base not in BUILTIN_TAGS:
            kind = TemplateErrorKind.UNKNOWN_TAG
    return TemplateError(kind, f'{message} ({exc.name or template}, line {exc.lineno})',
                         template=exc.name or template, cause=exc)


class Renderer:
    def __init__(self, pages_dir, tag_registry, max_include_depth=10, auto_reload=True,
                 loader=None):
        self.tag_registry = tag_registry
        self.env = PageEnvironment(
            loader=loader or FileSystemLoader(str(pages_dir)),
            autoescape=select_autoescape(['html', 'htm', 'xml']),
            undefined=ChainableUndefined,
            auto_reload=auto_reload,
            extensions=['jinja2.ext.do'],
        )
        self.env.extend(tag_registry=tag_registry, max_include_depth=max_include_depth)
        self.env.add_extension(TagLibraryExtension)
        register_filters(self.env)

    def load(self, template_ref):
        try:
            return self.env.get_template(template_ref)
        except TemplateNotFound as exc:
            raise TemplateError(TemplateErrorKind.NOT_FOUND,
                                f'Template not found: {template_ref}',
                                template=template_ref, cause=exc) from exc
        except TemplateSyntaxError as exc:
            raise _compile_error(exc, template_ref, self.tag_registry) from exc

    def render(self, template_ref, scope):
        """Render a page to a string; any failure aborts the whole page."""
        template = self.load(template_ref)
        try:
            return template.render(scope)
        except TagError as exc:
            raise TemplateError(TemplateErrorKind.TAG_EXECUTION_FAILED,
                                f'Tag <{exc.tag}> failed in {template_ref}: {exc.message}',
                                template=template_ref, cause=exc) from exc
        except TemplateNotFound as exc:
            raise TemplateError(TemplateErrorKind.NOT_FOUND,
                                f'Included template not found: {exc.name}',
                                template=exc.name, cause=exc) from exc
        except TemplateSyntaxError as exc:
            raise _compile_error(exc, template_ref, self.tag_registry) from exc
        except RecursionError as exc:
            raise TemplateError(TemplateErrorKind.NESTING_TOO_DEEP,
                                f'Recursion limit reached rendering {template_ref}',
                                template=template_ref, cause=exc) from exc
        except JinjaTemplateError as exc:
            raise TemplateError(TemplateErrorKind.EVALUATION_FAILED,
                                f'{exc.message} ({template_ref})',
                                template=template_ref, cause=exc) from exc

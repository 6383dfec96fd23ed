import logging
import traceback
import uuid
from types import MappingProxyType

from flask import Flask, request, session
from jinja2 import Template

from config import load_settings
from database import Database
from errors import AppError, TemplateErrorKind
from renderer import Renderer
from scope import Scope
from tags import default_registry

logger = logging.getLogger(__name__)

CONTENT_TYPE = 'text/html; charset=utf-8'
RESERVED_NAMES = ('request', 'response', 'session')

ERROR_PAGE = Template("""<html><head><title>{{ title }}</title></head>
<body>
<h1>{{ title }}</h1>
<p>Error: <code>{{ kind }}</code></p>
<p>Reference: <code>{{ correlation_id }}</code></p>
{% if details %}<pre>{{ details }}</pre>{% endif %}
</body></html>
""", autoescape=True)


def resolve_template_name(path, default_template='index', extension='.html'):
    # Default to index if root
    if not path or path == '/':
        name = default_template
    elif path.startswith('/'):
        name = path[1:]
    else:
        name = path

    # Add extension if not present
    if not name.endswith(extension):
        name = name + extension
    return name


def build_scope(response, page_globals=None):
    scope = Scope(parent=page_globals)

    # Request parameters; several values for one name become a list
    for key in request.values.keys():
        if key in RESERVED_NAMES:
            continue
        values = request.values.getlist(key)
        scope[key] = values[0] if len(values) == 1 else values

    scope['request'] = request
    scope['response'] = response
    scope['session'] = session
    return scope


def render_error_page(status, title, error, correlation_id, debug=False):
    details = None
    if debug:
        details = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
    kind = error.summary if isinstance(error, AppError) else type(error).__name__
    return ERROR_PAGE.render(title=title, kind=kind, correlation_id=correlation_id,
                             details=details), status


def create_app(settings=None, database=None):
    settings = settings or load_settings()

    app = Flask(__name__, static_folder=None)
    app.config['SECRET_KEY'] = settings.secret_key
    app.config['DEBUG'] = settings.debug
    app.settings = settings

    # Fails here, before any request is served, if the store is unreachable
    db = database or Database.from_settings(settings)
    db.initialize()
    app.db = db

    app.renderer = Renderer(
        settings.pages_dir,
        default_registry(db),
        max_include_depth=settings.max_include_depth,
        auto_reload=settings.auto_reload,
    )
    # Read-only; each request writes into its own scope
    app.page_globals = MappingProxyType(dict(settings.globals))

    def handle_page(path=''):
        template_name = resolve_template_name(request.path, settings.default_template,
                                              settings.template_extension)
        logger.debug('Processing request: %s -> %s', request.path, template_name)

        response = app.response_class(content_type=CONTENT_TYPE)
        scope = build_scope(response, app.page_globals)

        try:
            output = app.renderer.render(template_name, scope)
        except AppError as exc:
            correlation_id = uuid.uuid4().hex
            if exc.kind is TemplateErrorKind.NOT_FOUND and exc.template == template_name:
                logger.info('Template not found for %s: %s [%s]', request.path, template_name,
                            correlation_id)
                body, status = render_error_page(404, 'Page Not Found', exc, correlation_id,
                                                 settings.debug)
            else:
                logger.error('Error processing template %s [%s]: %s', template_name,
                             correlation_id, exc, exc_info=exc)
                body, status = render_error_page(500, 'Error Processing Template', exc,
                                                 correlation_id, settings.debug)
            return app.response_class(body, status=status, content_type=CONTENT_TYPE)
        except Exception as exc:
            correlation_id = uuid.uuid4().hex
            logger.exception('Unexpected error processing template %s [%s]', template_name,
                             correlation_id)
            body, status = render_error_page(500, 'Error Processing Template', exc,
                                             correlation_id, settings.debug)
            return app.response_class(body, status=status, content_type=CONTENT_TYPE)

        # Whole page is buffered; nothing is sent unless rendering succeeded
        response.set_data(output)
        logger.debug('Successfully processed: %s', template_name)
        return response

    app.add_url_rule('/', 'page', handle_page, methods=['GET', 'POST'])
    app.add_url_rule('/<path:path>', 'page', handle_page, methods=['GET', 'POST'])

    return app


def configure_logging(level='INFO'):
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


if __name__ == '__main__':
    settings = load_settings()
    configure_logging(settings.log_level)
    app = create_app(settings)
    logger.info('Server running at: http://%s:%d', settings.host, settings.port)
    try:
        app.run(host=settings.host, port=settings.port, debug=False, threaded=True)
    finally:
        app.db.shutdown()

from datetime import date, datetime

import pytest
from jinja2 import DictLoader
from jinja2.exceptions import FilterArgumentError

from errors import TagError, TagErrorKind, TemplateErrorKind, TemplateError
from filters import format_date, format_number
from renderer import Renderer
from scope import Scope
from tags import default_registry


@pytest.fixture
def render(database):
    def render(templates, name='page.html', scope=None, max_include_depth=10, db=None):
        if isinstance(templates, str):
            templates = {name: templates}
        renderer = Renderer(None, default_registry(db or database),
                            max_include_depth=max_include_depth, loader=DictLoader(templates))
        return renderer.render(name, scope if scope is not None else Scope())
    return render


def render_error(render, *args, **kwargs):
    with pytest.raises(TemplateError) as excinfo:
        render(*args, **kwargs)
    return excinfo.value


def test_plain_template_renders_variables(render):
    assert render('Hello {{ name }}!', scope=Scope({'name': 'World'})) == 'Hello World!'


def test_missing_values_render_empty(render):
    assert render('[{{ missing }}][{{ missing.attr.deeper }}]') == '[][]'


def test_output_is_escaped(render):
    assert render('{{ text }}', scope=Scope({'text': '<b>'})) == '&lt;b&gt;'


def test_scope_parent_values_are_visible(render):
    scope = Scope({'name': 'page'}, parent=Scope({'site_name': 'Shop', 'name': 'global'}))
    assert render('{{ name }}@{{ site_name }}', scope=scope) == 'page@Shop'


def test_query_binds_rows_for_the_rest_of_the_page(render):
    template = (
        '{% query var="users" %}'
        'SELECT name FROM users WHERE active = TRUE ORDER BY id'
        '{% endquery %}'
        '{{ users_count }}:{% for u in users %}{{ u.name }},{% endfor %}'
    )
    assert render(template) == '4:John Doe,Jane Smith,Bob Wilson,Charlie Brown,'


def test_attributes_may_be_separated_by_commas(render):
    template = (
        '{% query var="rows", table="users" %}SELECT 1 AS one{% endquery %}'
        '{{ rows[0].one }}'
    )
    assert render(template) == '1'


def test_body_expressions_are_substituted_unescaped(render):
    template = (
        '{% query var="rows" %}SELECT \'{{ word }}\' AS word{% endquery %}'
        '{{ rows[0].word }}'
    )
    assert render(template, scope=Scope({'word': 'a&b'})) == 'a&amp;b'


def test_tag_inside_loop_sees_loop_variable(render):
    template = (
        '{% for id in [1, 2] %}'
        '{% query var="u" %}SELECT name FROM users WHERE id = {{ id }}{% endquery %}'
        '{{ u[0].name }};'
        '{% endfor %}'
    )
    assert render(template) == 'John Doe;Jane Smith;'


def test_update_without_var_produces_no_output(render, database):
    template = (
        '[{% update %}UPDATE users SET active = FALSE WHERE id = 1{% endupdate %}]'
        '{% query var="u" %}SELECT active FROM users WHERE id = 1{% endquery %}'
        '{{ u[0].active }}'
    )
    assert render(template) == '[]0'


def test_update_binds_affected_rows(render):
    template = (
        "{% update var=\"n\" %}UPDATE users SET role = 'staff' WHERE role = 'user'{% endupdate %}"
        '{{ n }}'
    )
    assert render(template) == '4'


def test_tags_run_in_document_order(render):
    template = (
        '{% execute %}CREATE TABLE log (n INT){% endexecute %}'
        '{% execute %}INSERT INTO log VALUES (1){% endexecute %}'
        '{% query var="rows" %}SELECT n FROM log{% endquery %}'
        '{{ rows_count }}'
    )
    assert render(template) == '1'


def test_bound_variables_are_visible_in_includes(render):
    templates = {
        'page.html': '{% query var="users" %}SELECT id FROM users{% endquery %}'
                     '{% include "count.html" %}',
        'count.html': '{{ users_count }} users',
    }
    assert render(templates) == '5 users'


def test_unknown_tag_fails_before_anything_runs(render, database):
    template = (
        '{% update %}DELETE FROM users{% endupdate %}'
        'before{% sqlQuery var="x" %}SELECT 1{% endsqlQuery %}after'
    )
    error = render_error(render, template)

    assert error.kind is TemplateErrorKind.UNKNOWN_TAG
    assert error.template == 'page.html'
    with database.connection() as conn:
        assert conn.execute('SELECT COUNT(*) FROM users').fetchone()[0] == 5


@pytest.mark.parametrize('template', [
    '{% query var=name %}SELECT 1{% endquery %}',
    '{% query var="not valid" %}SELECT 1{% endquery %}',
    '{% query var="a" var="b" %}SELECT 1{% endquery %}',
    '{% query var="x" %}{% if a %}SELECT 1{% endif %}{% endquery %}',
    '{% query var="x" %}SELECT 1',
    '{{ value|no_such_filter }}',
    '{% query var="x" %}SELECT 1{% endupdate %}',
    '{% query var="x" %}SELECT 1{% endif %}',
    '{% endquery %}',
])
def test_malformed_templates_are_syntax_errors(render, template):
    error = render_error(render, template)
    assert error.kind is TemplateErrorKind.SYNTAX_ERROR


def test_failing_tag_aborts_render(render):
    error = render_error(render, 'partial{% query var="x" %}SELECT * FROM nope{% endquery %}')

    assert error.kind is TemplateErrorKind.TAG_EXECUTION_FAILED
    assert error.summary == 'TagExecutionFailed: QueryFailed'
    assert isinstance(error.cause, TagError)
    assert error.cause.tag == 'query'


def test_blank_var_fails_at_render_time(render):
    error = render_error(render, '{% query var="" %}SELECT 1{% endquery %}')
    assert error.kind is TemplateErrorKind.TAG_EXECUTION_FAILED
    assert error.cause.kind is TagErrorKind.MISSING_ATTRIBUTE


def test_empty_body_fails(render):
    error = render_error(render, '{% execute %}   {% endexecute %}')
    assert error.summary == 'TagExecutionFailed: EmptyBody'


def test_missing_page_is_not_found(render):
    error = render_error(render, {'other.html': ''}, name='missing.html')
    assert error.kind is TemplateErrorKind.NOT_FOUND
    assert error.template == 'missing.html'


def test_missing_include_is_not_found(render):
    error = render_error(render, '{% include "nope.html" %}')
    assert error.kind is TemplateErrorKind.NOT_FOUND
    assert error.template == 'nope.html'


def test_self_include_is_nesting_too_deep(render):
    error = render_error(render, 'x{% include "page.html" %}', max_include_depth=3)
    assert error.kind is TemplateErrorKind.NESTING_TOO_DEEP


def test_include_chain_within_limit_renders(render):
    templates = {
        'page.html': 'A{% include "b.html" %}',
        'b.html': 'B{% include "c.html" %}',
        'c.html': 'C',
    }
    assert render(templates, max_include_depth=3) == 'ABC'


def test_invalid_filter_input_is_evaluation_failure(render):
    error = render_error(render, '{{ when|format_date }}', scope=Scope({'when': 'not a date'}))
    assert error.kind is TemplateErrorKind.EVALUATION_FAILED


def test_leases_are_returned_after_success_and_failure(render, counting_database):
    render('{% query var="u" %}SELECT 1{% endquery %}', db=counting_database)
    render_error(render, '{% query var="u" %}SELECT * FROM nope{% endquery %}', db=counting_database)
    assert counting_database.acquired == 2
    assert counting_database.outstanding == 0


@pytest.mark.parametrize('value, pattern, expected', [
    (datetime(2024, 1, 2, 3, 4, 5), None, '2024-01-02 03:04:05'),
    (date(2024, 1, 2), '%d/%m/%Y', '02/01/2024'),
    ('2024-01-02 03:04:05', '%Y-%m-%d', '2024-01-02'),
    (None, None, ''),
    ('', None, ''),
])
def test_format_date(value, pattern, expected):
    args = (pattern,) if pattern else ()
    assert format_date(value, *args) == expected


def test_format_date_accepts_epoch_millis():
    expected = datetime.fromtimestamp(1700000000).strftime('%Y-%m-%d')
    assert format_date(1700000000000, '%Y-%m-%d') == expected
    assert format_date('1700000000000', '%Y-%m-%d') == expected


def test_format_date_rejects_garbage():
    with pytest.raises(FilterArgumentError):
        format_date('yesterday')


@pytest.mark.parametrize('value, pattern, expected', [
    (1234.5, None, '1,234.50'),
    (7, None, '7.00'),
    ('12.5', '.1f', '12.5'),
    (None, None, '0'),
])
def test_format_number(value, pattern, expected):
    args = (pattern,) if pattern else ()
    assert format_number(value, *args) == expected


@pytest.mark.parametrize('value, pattern', [('abc', ',.2f'), (1, 'zz')])
def test_format_number_rejects_bad_input(value, pattern):
    with pytest.raises(FilterArgumentError):
        format_number(value, pattern)

"""
Basic page rendering example: an inline template using the SQL tags
"""

from jinja2 import DictLoader

from database import Database
from renderer import Renderer
from scope import Scope
from tags import default_registry

db = Database('file:basic_example?mode=memory&cache=shared', initial_size=1, max_active=2)
db.initialize()

templates = {
    'fruits.html': """
{% execute %}
  CREATE TABLE fruits (name TEXT, price REAL);
  INSERT INTO fruits VALUES ('Apple', 0.5), ('Banana', 0.25), ('Orange', 0.75);
{% endexecute %}
{% query var="fruits" %}SELECT name, price FROM fruits ORDER BY name{% endquery %}
<ul>
{% for fruit in fruits %}
    <li>{{ fruit.name }}: {{ fruit.price|format_number }}</li>
{% endfor %}
</ul>
{{ fruits_count }} fruits
""",
    'greeting.html': """
{% if user %}
    Hello {{ user }}!
{% else %}
    Hello Guest!
{% endif %}
""",
}

renderer = Renderer(None, default_registry(db), loader=DictLoader(templates))

print(renderer.render('fruits.html', Scope()))
print(renderer.render('greeting.html', Scope({'user': 'Alice'})))
print(renderer.render('greeting.html', Scope()))

db.shutdown()

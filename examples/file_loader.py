"""
Render a page from the pages directory to stdout, without the web server

    python examples/file_loader.py users.html show=all
"""

import sys

from config import load_settings
from database import Database
from renderer import Renderer
from scope import Scope
from tags import default_registry

settings = load_settings()
db = Database.from_settings(settings)
db.initialize()

# Remaining arguments become page variables
name = sys.argv[1] if len(sys.argv) > 1 else 'index.html'
variables = dict(arg.split('=', 1) for arg in sys.argv[2:] if '=' in arg)

renderer = Renderer(settings.pages_dir, default_registry(db))
try:
    print(renderer.render(name, Scope(variables, parent=Scope(settings.globals))))
finally:
    db.shutdown()

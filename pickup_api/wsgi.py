"""WSGI entrypoint used by Gunicorn."""
import os

from pickup_api.app import create_app
from pickup_api.config import _env_bool
from pickup_api.errors import ValidationError
from pickup_api.services.game_catalog import generate_week


config_name = os.environ.get('FLASK_ENV', 'production')
app = create_app(config_name)

if _env_bool('AUTO_GENERATE_WEEK', False):
    with app.app_context():
        try:
            created = generate_week()
            print(f'Generated {len(created)} games from templates')
        except ValidationError as exc:
            print(f'Skipped game generation: {exc.message}')

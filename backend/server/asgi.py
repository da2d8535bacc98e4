"""
Module-level ASGI app: `uvicorn server.asgi:app --app-dir backend`.

.env is read before create_app() so AppConfig.load_from_env() sees it.
"""

from dotenv import load_dotenv

load_dotenv()

from server.app import create_app  # pylint: disable=wrong-import-position

app = create_app()

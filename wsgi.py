"""
WSGI entry point for SatsHunt.

Loads .env, builds the app and starts the background reconciliation workers.
"""
import atexit

from dotenv import load_dotenv

load_dotenv()

from satshunt.factory import create_app, shutdown_app, start_workers  # noqa: E402

app = create_app()
start_workers(app)
atexit.register(shutdown_app, app)

# Gunicorn/uWSGI compatibility
application = app

if __name__ == "__main__":
    cfg = app.config["APP_CONFIG"]
    app.run(host=cfg["APP_HOST"], port=cfg["APP_PORT"], debug=False)

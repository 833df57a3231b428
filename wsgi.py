# wsgi.py - entry point for gunicorn (gunicorn -c gunicorn.config.py wsgi:app)
import gevent.monkey
gevent.monkey.patch_all()

import os
from app import create_app

app = create_app()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    debug_mode = app.config.get("DEBUG", False)
    app.run(debug=debug_mode, host="0.0.0.0", port=port)

"""WSGI entrypoint for the rule compiler API.

Run with e.g. `gunicorn -b 0.0.0.0:5000 wsgi:app` from the web/ directory.
Use a single worker process: rule tiers and compiled lists are held per process.
"""

from app import app as app

# Common WSGI convention for other servers/tools.
application = app

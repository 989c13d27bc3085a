"""
WSGI entry point.

    gunicorn -k gthread --threads 8 -b 0.0.0.0:5000 technms.wsgi:app
"""

import os

from .app import create_app
from .dashboard import socketio

app = create_app()

if __name__ == '__main__':
    socketio.run(app, host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=False)

# Routes package

from wya.routes.auth import auth_bp
from wya.routes.api import api_bp
from wya.routes.signal import signal_bp

__all__ = ['auth_bp', 'api_bp', 'signal_bp']

# Flask extensions initialization
# Helps avoid circular imports by initializing extensions without app context

from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO
from flask_login import LoginManager

db = SQLAlchemy()

# async_mode and cors_allowed_origins are supplied by create_app from config.
# async_handlers=False keeps the events of one connection in arrival order.
# always_connect=True acknowledges the connection before the connect handler
# runs, so nothing queued for the session can reach the client ahead of it.
socketio = SocketIO(
    ping_timeout=60,
    ping_interval=25,
    async_handlers=False,
    always_connect=True,
    path='socket.io',
    engineio_logger=False,
    socketio_logger=False
)
login_manager = LoginManager()

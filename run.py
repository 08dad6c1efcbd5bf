# Entry point for the WYA!? realtime relay

import eventlet
eventlet.monkey_patch()

import logging  # noqa: E402

from wya import create_app  # noqa: E402
from wya.extensions import socketio  # noqa: E402
from wya.realtime import realtime  # noqa: E402

app = create_app()
logger = logging.getLogger('wya.run')

if __name__ == '__main__':
    logger.info('[SERVER STARTUP] Starting WYA!? relay...')
    logger.info('[SERVER CONFIG] Socket.IO running on port 5000')
    try:
        socketio.run(app, host='0.0.0.0', port=5000, debug=False)
    finally:
        logger.info('[SERVER SHUTDOWN] Closing %d session(s)', len(realtime.registry))
        realtime.registry.close_all()

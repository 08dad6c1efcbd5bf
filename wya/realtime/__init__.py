# Realtime core: presence, chat gateway and signal relay wired from app config

from wya.realtime.errors import RelayError
from wya.realtime.gateway import ChatGateway
from wya.realtime.presence import PresenceTracker
from wya.realtime.ratelimit import MessageRateLimiter
from wya.realtime.sessions import Session, SessionRegistry
from wya.realtime.signals import SignalRelay


class Realtime:
    """Holds the components shared by the socket handlers and the HTTP routes."""

    def __init__(self, app=None):
        self.registry = None
        self.presence = None
        self.gateway = None
        self.signals = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        cfg = app.config
        self.registry = SessionRegistry()
        self.presence = PresenceTracker()
        self.gateway = ChatGateway(
            self.registry,
            self.presence,
            rate_limiter=MessageRateLimiter(cfg['RATE_LIMIT_MESSAGES'], cfg['RATE_LIMIT_WINDOW_SECONDS']),
            queue_size=cfg['SESSION_QUEUE_SIZE'],
            overflow_policy=cfg['SESSION_OVERFLOW_POLICY'],
            max_retries=cfg['SEND_MAX_RETRIES'],
            backoff=cfg['SEND_BACKOFF_SECONDS'],
            reaction_retries=cfg['REACTION_MAX_RETRIES'],
            max_length=cfg['MAX_MESSAGE_LENGTH'],
            page_size=cfg['HISTORY_PAGE_SIZE'],
        )
        self.signals = SignalRelay(
            self.registry,
            window_seconds=cfg['SIGNAL_WINDOW_SECONDS'],
            retention_seconds=cfg['SIGNAL_RETENTION_SECONDS'],
            max_payload_bytes=cfg['SIGNAL_MAX_PAYLOAD_BYTES'],
            max_retries=cfg['SEND_MAX_RETRIES'],
            backoff=cfg['SEND_BACKOFF_SECONDS'],
            on_evict=self.gateway.evict,
        )
        app.extensions['wya_realtime'] = self


__all__ = [
    'Realtime', 'realtime', 'RelayError', 'ChatGateway', 'PresenceTracker', 'MessageRateLimiter',
    'Session', 'SessionRegistry', 'SignalRelay'
]

# Shared instance, configured by create_app
realtime = Realtime()

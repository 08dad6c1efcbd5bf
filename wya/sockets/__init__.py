# Socket handlers register themselves on import

from wya.sockets import events  # noqa: F401

# Models package
# Import all models here for convenience

from wya.models.user import User, Block
from wya.models.chat import Room, Member
from wya.models.content import Message, MessageReaction, DirectMessage
from wya.models.presence import Presence
from wya.models.signal import SignalEnvelope

__all__ = [
    'User', 'Block',
    'Room', 'Member',
    'Message', 'MessageReaction', 'DirectMessage',
    'Presence', 'SignalEnvelope'
]

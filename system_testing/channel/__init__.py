from system_testing.channel.server import ChannelServer
from system_testing.channel.service import CommandChannel
from system_testing.channel.views import CommandEnvelope

__all__ = ['ChannelServer', 'CommandChannel', 'CommandEnvelope']

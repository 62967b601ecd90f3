from system_testing.http_server.service import StaticContentServer, wait_until_reachable

__all__ = ['StaticContentServer', 'wait_until_reachable']

"""termbroker -- Session-multiplexing terminal broker.

This package lets a remote client drive any number of pty-backed shell
sessions over a single WebSocket connection, keyed by client-supplied
terminal identifiers, and provides the layout tree a client uses to
arrange those sessions into resizable tiled panes.
"""

__version__ = "0.1.0"

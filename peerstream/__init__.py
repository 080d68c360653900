"""
peerstream - prompt/token streaming over an established peer channel.

A client-side protocol engine that negotiates protocol compatibility with a
remote model host, caches its model descriptor, submits generation requests
and reassembles the streamed visible and reasoning channels.
"""

__version__ = "1.0.0"

PROTOCOL_VERSION = "1.0.0"
MIN_COMPATIBLE_VERSION = "1.0.0"

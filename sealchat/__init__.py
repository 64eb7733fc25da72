"""
SealChat: multi-device end-to-end encrypted messaging.

Sub-packages:
- crypto: device identity, conversation key distribution, message encryption
- client: device-side storage and server adapters
- server: device key directory, key envelope store and message relay
"""

__version__ = "1.0.0"

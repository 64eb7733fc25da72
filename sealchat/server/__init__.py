"""
Untrusted server: device key directory, key envelope store and message relay.
"""

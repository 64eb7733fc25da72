"""
Device-side adapters: encrypted local storage, server HTTP adapters and CLI client.
"""

"""Transport implementations.

The neonize transport is imported lazily by the app so that the core can
be used (and tested) without the native whatsmeow library.
"""

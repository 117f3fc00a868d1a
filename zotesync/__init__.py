"""Peer-to-peer replication for ZotePad installations."""

__version__ = "0.1.0"

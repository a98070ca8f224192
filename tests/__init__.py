"""Preservation transfer test suite.

unit/ covers each stage (fixity, prepare, transfer, verify), the storage
backends, the remote fixity transports and the CLI against in-memory SQLite.
"""

"""
Pipeline lab backend.

This package provides:
- Lab sessions: buffers, output log and the compile/execute lifecycle (session/)
- The compute engine contract and the built-in engine (engine/)
- The engine adapter (adapter.py) and HTTP clients (clients.py)
- Share and normalise services (share.py, normalise.py)
- Session HTTP API (sessions.py), settings (settings.py), system (system.py)
"""

__version__ = "1.0.0"

# waflow/services/__init__.py
"""Domain services: crypto-backed booking, routing, sandboxed functions, sending."""

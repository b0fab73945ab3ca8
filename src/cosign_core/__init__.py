# src/cosign_core/__init__.py

"""Co-signed accountability tasks: deadlines, proof review and sealed penalties."""

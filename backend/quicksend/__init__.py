"""QuickSend upload coordination: presigned uploads, ledger, retention."""
__version__ = "1.0.0"

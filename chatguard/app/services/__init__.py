"""Services package for chatguard.

This package provides:
- Markup stripping for raw client bodies (sanitizer)
- Content admission (content_validator)
- Message storage backends (message_store)
- The admission-checked write path (chat)
"""

"""SmartScan - scanned document archive with OCR and role-scoped search."""

__version__ = "0.1.0"

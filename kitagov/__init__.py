"""kitagov - consent and data-lifecycle governance for daycare backends."""

__version__ = "0.1.0"

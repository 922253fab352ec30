"""Concrete adapters behind the interfaces in ``ragdesk.interfaces``."""

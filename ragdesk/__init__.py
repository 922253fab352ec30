"""ragdesk - multi-tenant retrieval-augmented chat platform."""

__version__ = "0.1.0"

"""Discovery, caching and capacity planning for multi-tenant Mimir clusters."""

__version__ = "0.1.0"

"""Client module - Gateways, sync core and CLI."""

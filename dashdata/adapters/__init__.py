"""Backend adapters. Exactly one database adapter is active per session."""

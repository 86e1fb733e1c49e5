"""Core primitives shared by every vigil component: errors, models, logging, settings."""

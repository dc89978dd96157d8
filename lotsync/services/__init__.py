"""Service layer modules for lotsync."""

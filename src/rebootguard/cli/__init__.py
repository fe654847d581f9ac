"""rebootguard command line interface."""

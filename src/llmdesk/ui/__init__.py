"""Qt widgets for the desktop window."""

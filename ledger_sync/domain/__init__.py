"""Domain types and capability interfaces."""

"""Feature modules for :mod:`vecsync`."""

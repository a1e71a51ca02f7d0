"""yeoldbackup: one-way folder mirroring on top of rsync."""

__version__ = "0.1.0"

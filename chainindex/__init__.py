"""Key-value store, row layouts, block-file reading, metrics and asset registry for blockchain indexing."""

__version__ = "0.1.0"
"""memindex: workspace memory indexing with hybrid search."""

__version__ = "0.1.0"

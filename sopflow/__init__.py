"""sopflow: confidence-driven question answering over standard operating procedures."""

__version__ = "0.1.0"

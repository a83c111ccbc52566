"""DeadCI: minimal continuous-integration runner."""

__version__ = "1.0.0"

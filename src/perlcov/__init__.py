"""Fast parallel Perl test coverage built on Devel::Cover."""

__version__ = "0.2.0"

__all__ = ["__version__"]

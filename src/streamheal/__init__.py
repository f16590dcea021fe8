"""streamheal - keeps live media streams playing through stalls."""

from streamheal.__about__ import __version__

__all__ = ["__version__"]

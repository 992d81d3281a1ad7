from ._meta import __version__

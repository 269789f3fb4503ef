# Court harvester: enumerates a top-K court search endpoint
__version__ = "1.0.0"

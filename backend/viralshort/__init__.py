"""ViralShort: turns long-form videos into narrated, subtitled vertical shorts."""

__version__ = "1.0.0"

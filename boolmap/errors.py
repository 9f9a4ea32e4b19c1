"""Exceptions raised by the Boolean Map saliency pipeline."""


class BMSError(Exception):
    """Base class for saliency pipeline failures."""


class InvalidInput(BMSError, ValueError):
    """Source image is missing, empty or not a 3-channel color image."""


class InvalidConfiguration(BMSError, ValueError):
    """A pipeline parameter is out of range (e.g. a non-positive threshold step)."""

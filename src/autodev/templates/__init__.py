"""Context file templates written by ``autodev init``."""

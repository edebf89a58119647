"""Encrypted multi-disk Gentoo provisioner and boot-path recovery toolkit."""

__version__ = "0.1.0"

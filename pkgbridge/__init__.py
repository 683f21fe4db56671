"""pkgbridge: install and purge application packages on apt, apk and pacman hosts."""

__version__ = "0.1.0"

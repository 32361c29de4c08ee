"""Bifrost: a vim-style terminal client for Telegram."""

__version__ = "0.1.0"

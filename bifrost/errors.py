class BifrostError(Exception):
    """Base for errors that stop the client before the UI starts."""


class CredentialsError(BifrostError):
    """Telegram API id/hash missing or malformed."""


class SessionError(BifrostError):
    """Could not connect or sign in to the selected account."""

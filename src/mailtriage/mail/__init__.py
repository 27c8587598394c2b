"""Remote mailbox adapters.

Usage:
    from mailtriage.mail import ImapFolderMover
"""

from mailtriage.mail.imap import PASSWORD_ENV_VAR, ImapFolderMover

__all__ = [
    "ImapFolderMover",
    "PASSWORD_ENV_VAR",
]

"""IMAP folder mover.

Implements the FolderMover port with ``imapclient``. Each move opens its own
connection in a worker thread, so the event loop never blocks on the
server. Servers with the MOVE extension (RFC 6851) get a single MOVE;
others fall back to COPY + \\Deleted + UID EXPUNGE. Without UIDPLUS the
source copy is left flagged \\Deleted. Missing target folders are created
first.

The login password comes from ``MAILTRIAGE_IMAP_PASSWORD``; the username
defaults to the account's email address.

Usage:
    from mailtriage.mail.imap import ImapFolderMover

    mover = ImapFolderMover(config.imap)
    await mover.move_message(account, uid=4711, from_path="INBOX", to_path="Feed")
"""

from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError

from mailtriage.core.errors import MoveError
from mailtriage.core.logging import get_logger

if TYPE_CHECKING:
    from mailtriage.config_schema import ImapConfig
    from mailtriage.core.domain import Account

logger = get_logger(__name__)

PASSWORD_ENV_VAR = "MAILTRIAGE_IMAP_PASSWORD"


class ImapFolderMover:
    """Moves messages between IMAP folders by UID.

    Attributes:
        _config: IMAP connection settings
        _password: Login password (defaults to MAILTRIAGE_IMAP_PASSWORD)
    """

    def __init__(self, config: ImapConfig, password: str | None = None):
        self._config = config
        self._password = password

    async def move_message(self, account: Account, uid: int, from_path: str, to_path: str) -> None:
        """Move one message from ``from_path`` to ``to_path``.

        Raises:
            MoveError: Missing credentials or any IMAP failure
        """
        await asyncio.to_thread(self._move_sync, account, uid, from_path, to_path)
        logger.info(
            "imap_message_moved",
            account_id=account.id,
            uid=uid,
            from_folder=from_path,
            to_folder=to_path,
        )

    def _move_sync(self, account: Account, uid: int, from_path: str, to_path: str) -> None:
        if not account.imap_host:
            raise MoveError(
                f"Account {account.email} has no IMAP host configured. "
                "Set imap_host on the account before moving messages."
            )

        password = self._password or os.environ.get(PASSWORD_ENV_VAR)
        if not password:
            raise MoveError(
                f"No IMAP password available for {account.email}. "
                f"Set the {PASSWORD_ENV_VAR} environment variable."
            )

        try:
            with IMAPClient(
                host=account.imap_host,
                port=account.imap_port,
                ssl=self._config.ssl,
                timeout=self._config.timeout_seconds,
            ) as client:
                client.login(account.username or account.email, password)

                if not client.folder_exists(to_path):
                    client.create_folder(to_path)
                    logger.info("imap_folder_created", account_id=account.id, folder=to_path)

                client.select_folder(from_path)
                if client.has_capability("MOVE"):
                    client.move([uid], to_path)
                else:
                    client.copy([uid], to_path)
                    client.delete_messages([uid])
                    if client.has_capability("UIDPLUS"):
                        client.uid_expunge([uid])
                    else:
                        # A plain EXPUNGE would also purge other \Deleted messages
                        logger.warning(
                            "imap_expunge_skipped", account_id=account.id, uid=uid, folder=from_path
                        )

                client.logout()

        except (IMAPClientError, OSError) as e:
            logger.error(
                "imap_move_failed",
                account_id=account.id,
                uid=uid,
                from_folder=from_path,
                to_folder=to_path,
                error=str(e),
            )
            raise MoveError(
                f"IMAP move of UID {uid} from '{from_path}' to '{to_path}' failed: {e}",
                target_folder=to_path,
            ) from e

"""Logging formatters for CLI output."""

import logging


class LevelFormatter(logging.Formatter):
    """Logging formatter that names the level of warnings and errors.

    Progress messages are printed as they are; anything at WARNING or above
    is prefixed with its lowercased level name.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with a level prefix for warnings and errors.

        Parameters
        ----------
        record : logging.LogRecord
            Log record to format

        Returns
        -------
        str
            Formatted log message
        """
        msg = super().format(record)

        if record.levelno >= logging.WARNING:
            return f"{record.levelname.lower()}: {msg}"

        return msg

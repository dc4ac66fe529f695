# vuln_matcher/errors.py
"""Exception types raised by the matcher, store, feed and suppression layers."""


class VulnMatcherError(Exception):
    """Base class for every error raised by vuln_matcher."""


class ConfigurationError(VulnMatcherError):
    pass


class DatabaseError(VulnMatcherError):
    """The vulnerability store could not be opened, migrated or written."""


class StoreClosedError(DatabaseError):
    def __init__(self, message: str = "The vulnerability store has been closed"):
        super().__init__(message)


class FeedParseError(VulnMatcherError):
    """A feed document or one of its items could not be decoded."""


class DownloadFailedError(VulnMatcherError):
    pass


class UpdateError(VulnMatcherError):
    """Processing a single feed file failed."""


class SuppressionParseError(VulnMatcherError):
    """A suppression rule file could not be loaded."""


class SuppressionSchemaError(SuppressionParseError):
    """A suppression rule file was well formed but failed schema validation."""


class ExceptionCollection(VulnMatcherError):
    """Aggregates independent failures, e.g. several feed files failing in one update.

    ``fatal`` tells the caller whether the overall operation must be aborted or
    whether the collected errors only describe a partial result.
    """

    def __init__(self, exceptions=None, fatal: bool = False, message: str | None = None):
        self.exceptions: list[BaseException] = []
        self.fatal = fatal
        self._message = message or "One or more exceptions occurred"
        for exc in exceptions or []:
            self.add_exception(exc)
        super().__init__(self._message)

    def add_exception(self, exc: BaseException, fatal: bool | None = None) -> None:
        if isinstance(exc, ExceptionCollection):
            self.exceptions.extend(exc.exceptions)
            self.fatal = self.fatal or exc.fatal
        else:
            self.exceptions.append(exc)
        if fatal:
            self.fatal = True

    def __len__(self):
        return len(self.exceptions)

    def __bool__(self):
        return True

    def __str__(self):
        lines = [self._message]
        for exc in self.exceptions:
            lines.append(f"  - {type(exc).__name__}: {exc}")
            cause = exc.__cause__
            while cause is not None:
                lines.append(f"      caused by {type(cause).__name__}: {cause}")
                cause = cause.__cause__
        return "\n".join(lines)

from __future__ import annotations


class FetchError(Exception):
    pass


class FeedParseError(FetchError):
    pass


class MalformedHeaderError(Exception):
    def __init__(self, header: str) -> None:
        super().__init__(f"error parsing header {header}")
        self.header = header


class PersistenceError(Exception):
    pass


class SchemaTooNewError(Exception):
    pass

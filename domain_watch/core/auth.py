from dataclasses import dataclass

ALERTS_READ = "alerts:read"
CALLBACKS_TEST = "callbacks:test"
INGEST_WRITE = "ingest:write"


@dataclass(slots=True)
class Principal:
    key_fingerprint: str
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

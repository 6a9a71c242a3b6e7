"""kryten-ledger — Custodial wager ledger and settlement microservice."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kryten-ledger")
except PackageNotFoundError:
    __version__ = "0.0.0"

"""kryten-rewards — Rewards ledger and anti-abuse microservice."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("kryten-rewards")
except PackageNotFoundError:
    __version__ = "0.0.0"

"""ASGI entrypoint for the pairing service."""

from truth_pair.api.app import create_app
from truth_pair.containers import build_container

app = create_app(build_container())

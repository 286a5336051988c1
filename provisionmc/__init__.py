"""Main module for ProvisionMC API.

ProvisionMC ensures that a game client is ready to run from a local content directory:
a managed Java runtime, a base game version with its libraries and assets, an optional
mod loader profile composed on top of it, and the multiplayer server list. Every
component receives an explicit `Context` and reports its progress through a `Watcher`.
"""

LAUNCHER_VERSION = "1.0.0"
LAUNCHER_AUTHORS = ["ProvisionMC contributors"]
LAUNCHER_COPYRIGHT = "ProvisionMC  Copyright (C) 2024  ProvisionMC contributors"
LAUNCHER_URL = "https://github.com/provisionmc/provisionmc"

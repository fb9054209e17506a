"""Remote clients for the REDCap system of record."""

from clinsync.adapters.remote.redcap_client import RedcapClient, ScriptedRemoteClient

__all__ = ["RedcapClient", "ScriptedRemoteClient"]

from ledger.utils.network import client_ip
from ledger.utils.webhook import post_audit_event

__all__ = ["client_ip", "post_audit_event"]

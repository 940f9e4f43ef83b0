from tripsign.models.stored_file import StoredFile
from tripsign.models.template import ContractTemplate
from tripsign.models.contract import Contract, ContractStatus
from tripsign.models.audit_log import AuditLog

__all__ = ["StoredFile", "ContractTemplate", "Contract", "ContractStatus", "AuditLog"]

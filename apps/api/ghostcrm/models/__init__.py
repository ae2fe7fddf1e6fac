from ghostcrm.models.audit import AuditEvent
from ghostcrm.models.organization import Organization, OrganizationMember
from ghostcrm.telecom.models import Message, PhoneNumber, ProviderAccount, ProviderSecret

__all__ = [
	"AuditEvent",
	"Message",
	"Organization",
	"OrganizationMember",
	"PhoneNumber",
	"ProviderAccount",
	"ProviderSecret",
]

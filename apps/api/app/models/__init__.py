from app.models.activity import Activity
from app.identity.models import User
from app.crm.models import Customer, CustomerNote, Lead, Task

__all__ = [
	"Activity",
	"Customer",
	"CustomerNote",
	"Lead",
	"Task",
	"User",
]

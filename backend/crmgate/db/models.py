from crmgate.tenants.models import Tenant  # noqa: F401
from crmgate.auth.models import RefreshToken, User, UserPreference, UserSession  # noqa: F401
from crmgate.audit.models import LoginAttempt  # noqa: F401
from crmgate.permissions.models import Role, UserRole  # noqa: F401

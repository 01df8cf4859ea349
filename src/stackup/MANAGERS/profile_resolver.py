"""
Selection of the services that run for a given profile request.
"""
import logging
from typing import List, Optional

from ..MODELS.stack_definition import StackDefinition
from ..MODELS.service_spec import ServiceSpec
from ..errors import UnknownProfile

logger = logging.getLogger(__name__)


class ProfileResolver:
    """
    Resolves a profile request into the concrete, ordered subset of services to activate.
    """
    def resolve(self, definition: StackDefinition, profile: Optional[str] = None) -> List[ServiceSpec]:
        """
        Always-on services are always selected; profile-gated services only
        when the requested profile is one of their tags.

        :param definition: The stack definition.
        :param profile: Requested profile name, or None/"" for the always-on set only.
        :return: Selected services in declaration order.
        :raises UnknownProfile: If a non-empty profile matches no service.
        """
        profile = profile or None
        if profile is not None and not any(profile in svc.profiles for svc in definition.services):
            raise UnknownProfile(profile, known=list(definition.profiles))

        selected = [svc for svc in definition.services if svc.in_profile(profile)]
        logger.debug(
            "Profile %s selects: %s",
            profile or "(default)",
            ", ".join(svc.name for svc in selected) or "(nothing)",
        )
        return selected

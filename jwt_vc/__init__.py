"""jwt_vc credential format."""

import logging

from vc_portal.cred_processor import CredProcessors
from vc_portal.did_utils import DIDResolver

from .cred_processor import JwtVcCredProcessor

LOGGER = logging.getLogger(__name__)


def setup(processors: CredProcessors, resolver: DIDResolver) -> JwtVcCredProcessor:
    """Register the jwt_vc processor for every role it supports."""
    processor = JwtVcCredProcessor(resolver)
    processors.register_issuer("jwt_vc", processor)
    processors.register_holder("jwt_vc", processor)
    processors.register_cred_verifier("jwt_vc", processor)
    processors.register_pres_verifier("jwt_vc", processor)
    processors.register_pres_verifier("jwt_vp", processor)
    LOGGER.info("Registered jwt_vc credential processor")
    return processor

"""Rate limiter shared by the auth and env routes; disabled with EVM_RATE_LIMIT_ENABLED=false."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from evm_server.config import get_settings

limiter = Limiter(key_func=get_remote_address, enabled=get_settings().rate_limit_enabled)

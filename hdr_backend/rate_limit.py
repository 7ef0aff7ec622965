#  HDR Backend - Rate Limiter
#
#  Shared limiter instance used by app.py and route decorators.
#
#  Depends on: config.py
#  Used by:    app.py, routes/uploads.py, routes/images.py

from slowapi import Limiter
from slowapi.util import get_remote_address

from hdr_backend.config import RATE_LIMIT_DEFAULT

limiter = Limiter(key_func=get_remote_address, default_limits=[RATE_LIMIT_DEFAULT])

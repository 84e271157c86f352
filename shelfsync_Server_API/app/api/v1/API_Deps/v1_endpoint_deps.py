# v1_endpoint_deps.py
# Description: This file is to serve as a sink for dependencies across the v1 endpoints.
#
# 3rd-party Libraries
from fastapi.security import OAuth2PasswordBearer
#
#######################################################################################################################
#
# Static Variables
# auto_error=False so a missing header reaches get_request_user, which answers 403 in the sync error format
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)
#
# End of v1_endpoint_deps.py
#######################################################################################################################

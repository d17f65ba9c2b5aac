from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from aptdesk.complaints.policy import Role
from aptdesk.complaints.service import ComplaintService
from aptdesk.dependencies.auth import User, role_required

require_resident = role_required(Role.RESIDENT)
require_admin = role_required(Role.ADMIN)

ResidentUser = Annotated[User, Depends(require_resident)]
AdminUser = Annotated[User, Depends(require_admin)]


async def get_complaint_service(request: Request) -> ComplaintService:
    service = getattr(request.app.state, "complaint_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Complaint service is not configured")
    return service


ComplaintServiceDep = Annotated[ComplaintService, Depends(get_complaint_service)]

from typing import Annotated

from fastapi import Depends, Request

from keygate.app.services.activation import ActivationService


def get_activation_service(request: Request) -> ActivationService:
    return request.app.state.activation_service


ActivationServiceDep = Annotated[ActivationService, Depends(get_activation_service)]

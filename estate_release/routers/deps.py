from fastapi import Request
from estate_release.services.container import ReleaseServices

def get_services(request: Request) -> ReleaseServices:
    """Services built by the application factory"""
    return request.app.state.services

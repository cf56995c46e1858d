from fastapi import Request

from starraffle.services.lifecycle import RaffleLifecycleController

def get_controller(request: Request) -> RaffleLifecycleController:
    # built once at startup, see main.on_startup
    return request.app.state.controller

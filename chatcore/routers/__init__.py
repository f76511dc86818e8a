from fastapi import Request


def get_gateway(request: Request):
    return request.app.state.gateway

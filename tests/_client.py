import httpx

from lyra.main import app as default_app


def get_async_client(app=None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app or default_app),
        base_url="http://test",
    )

import asyncio

import pytest
from aiohttp import web

from app import create_app
from config import ProxyConfig

PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:10
#EXT-X-KEY:METHOD=AES-128,URI="key.bin",IV=0x1234
#EXTINF:10.0,
segment001.ts
#EXTINF:10.0,
segment002.ts
#EXT-X-ENDLIST
"""

SEGMENT = bytes(range(256)) * 16

MPD = """<?xml version="1.0"?>
<MPD><Period><AdaptationSet><SegmentTemplate media="chunk-$Number$.m4s"/></AdaptationSet></Period></MPD>
"""


def build_cdn_app(seen_requests):
    """Fake CDN. Every request's headers are appended to ``seen_requests``."""
    routes = web.RouteTableDef()

    @web.middleware
    async def record(request, handler):
        seen_requests.append({'path': request.path, 'headers': dict(request.headers)})
        return await handler(request)

    @routes.get('/videos/abc/playlist.m3u8')
    async def playlist(request):
        return web.Response(
            text=PLAYLIST,
            content_type='application/vnd.apple.mpegurl',
            headers={'ETag': '"playlist-v1"'}
        )

    @routes.get('/videos/abc/segment001.ts')
    async def segment(request):
        headers = {
            'Content-Type': 'video/mp2t',
            'ETag': '"seg-1"',
            'Last-Modified': 'Wed, 21 Oct 2015 07:28:00 GMT',
        }
        range_header = request.headers.get('Range')
        if range_header:
            start, end = range_header.replace('bytes=', '').split('-')
            start, end = int(start), int(end)
            headers['Content-Range'] = f"bytes {start}-{end}/{len(SEGMENT)}"
            headers['Accept-Ranges'] = 'bytes'
            return web.Response(body=SEGMENT[start:end + 1], status=206, headers=headers)
        return web.Response(body=SEGMENT, headers=headers)

    @routes.get('/ranged/playlist.m3u8')
    async def ranged_playlist(request):
        body = PLAYLIST.encode('utf-8')
        if request.headers.get('Range'):
            return web.Response(
                body=body,
                status=206,
                headers={
                    'Content-Type': 'application/vnd.apple.mpegurl',
                    'Content-Range': f"bytes 0-{len(body) - 1}/{len(body)}",
                }
            )
        return web.Response(body=body, content_type='application/vnd.apple.mpegurl')

    @routes.get('/live/index')
    async def extensionless_playlist(request):
        return web.Response(text="#EXTM3U\nchunk.ts\n", content_type='audio/mpegurl')

    @routes.get('/redirect/playlist.m3u8')
    async def redirect(request):
        raise web.HTTPFound('/moved/abc/playlist.m3u8')

    @routes.get('/moved/abc/playlist.m3u8')
    async def moved(request):
        return web.Response(text="#EXTM3U\nsegment.ts\n", content_type='application/x-mpegurl')

    @routes.get('/loop.ts')
    async def loop(request):
        raise web.HTTPFound('/loop.ts')

    @routes.get('/forbidden.m3u8')
    async def forbidden(request):
        return web.Response(text="Forbidden", status=403)

    @routes.get('/broken.ts')
    async def broken(request):
        return web.Response(text="Service Unavailable", status=503)

    @routes.get('/slow.ts')
    async def slow(request):
        await asyncio.sleep(3)
        return web.Response(body=b"late")

    @routes.get('/manifest.mpd')
    async def mpd(request):
        return web.Response(text=MPD, content_type='application/dash+xml')

    @routes.get('/garbage.m3u8')
    async def garbage(request):
        return web.Response(body=b"\xff\xfe\x00\x80binary", content_type='application/vnd.apple.mpegurl')

    @routes.get('/thumb.jpg')
    async def image(request):
        return web.Response(body=b"\xff\xd8\xff\xe0", content_type='image/jpeg')

    app = web.Application(middlewares=[record])
    app.add_routes(routes)
    return app


@pytest.fixture
def seen_requests():
    return []


@pytest.fixture
async def cdn(aiohttp_server, seen_requests):
    return await aiohttp_server(build_cdn_app(seen_requests))


@pytest.fixture
def cdn_url(cdn):
    def make(path):
        return str(cdn.make_url(path))
    return make


@pytest.fixture
def proxy_config():
    return ProxyConfig(request_timeout=1, max_redirects=5)


@pytest.fixture
async def client(aiohttp_client, proxy_config):
    return await aiohttp_client(create_app(proxy_config))

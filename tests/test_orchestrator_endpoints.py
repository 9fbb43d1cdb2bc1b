"""Tests for Orchestrator API endpoints."""

from urllib.parse import quote

import pytest
from fastapi.testclient import TestClient

from backends.memory_backend import MemoryBackend
from orchestrator.main import app
from orchestrator.routes.file_routes import attachment_disposition
from orchestrator.runtime import StorageRuntime
from orchestrator.security import RateLimiter
from orchestrator.service_locator import set_runtime
from tests.doubles import ARCHIVAL, PRIMARY, mark_all_healthy

HELLO_SHA256 = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


@pytest.fixture
def runtime(test_db):
    """Runtime over two healthy memory backends, installed for the app."""
    backends = {PRIMARY: MemoryBackend(PRIMARY), ARCHIVAL: MemoryBackend(ARCHIVAL)}
    runtime = StorageRuntime(backends=backends, primary_backend=PRIMARY, archival_backend=ARCHIVAL)
    mark_all_healthy(runtime.health_table, backends)
    set_runtime(runtime)
    yield runtime
    set_runtime(None)


@pytest.fixture
def client(runtime):
    """Create FastAPI test client."""
    return TestClient(app)


def auth(runtime, user_id="alice", permissions=("read", "write")):
    token = runtime.token_manager.issue(user_id, permissions=permissions).token
    return {'Authorization': f'Bearer {token}'}


def upload(client, headers, name='hello.txt', content=b'hello', **data):
    response = client.post('/files', files=[('files', (name, content, 'text/plain'))], data=data, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()['results'][0]['result']


def test_root_endpoint(client):
    """Test health check endpoint."""
    response = client.get('/')
    assert response.status_code == 200
    assert response.json()['status'] == 'running'


def test_ready_endpoint(client):
    response = client.get('/ready')
    assert response.status_code == 200
    data = response.json()
    assert data['ready'] is True
    assert sorted(data['healthy_backends']) == [ARCHIVAL, PRIMARY]


def test_ready_without_healthy_backends(client, runtime):
    runtime.health_table.mark(PRIMARY, False, "down")
    runtime.health_table.mark(ARCHIVAL, False, "down")

    response = client.get('/ready')
    assert response.status_code == 503
    assert response.json()['ready'] is False


def test_request_id_is_echoed(client):
    response = client.get('/health', headers={'X-Request-ID': 'req-123'})
    assert response.headers['X-Request-ID'] == 'req-123'


def test_missing_token(client):
    """Requests without a bearer token are rejected with 401."""
    response = client.get('/files')
    assert response.status_code == 401
    assert response.headers['WWW-Authenticate'] == 'Bearer'
    assert response.json()['code'] == 'INVALID_TOKEN'


def test_invalid_token(client):
    response = client.get('/files', headers={'Authorization': 'Bearer not-a-jwt'})
    assert response.status_code == 401


def test_malformed_authorization_header(client, runtime):
    token = runtime.token_manager.issue('alice').token
    response = client.get('/files', headers={'Authorization': f'Token {token}'})
    assert response.status_code == 401


def test_upload_single_file(client, runtime):
    """Test file upload endpoint stores the file on primary and backup."""
    result = upload(client, auth(runtime), tags='tag1,tag2', description='greeting')

    assert result['final_hash'] == HELLO_SHA256
    assert result['deduplicated'] is False
    assert [p['role'] for p in result['placements']] == ['primary', 'backup']
    assert result['processing_summary']['strategy'] == 'small'


def test_upload_batch_with_failure(client, runtime):
    response = client.post(
        '/files',
        files=[
            ('files', ('good.txt', b'fine content', 'text/plain')),
            ('files', ('bad.exe', b'MZ\x90\x00', 'application/octet-stream')),
        ],
        headers=auth(runtime),
    )

    assert response.status_code == 207
    data = response.json()
    assert data['uploaded'] == 1
    assert data['failed'] == 1
    assert data['results'][1]['success'] is False
    assert data['results'][1]['code'] == 'VALIDATION_FAILED'


def test_upload_is_rate_limited(client, runtime):
    runtime.rate_limiter = RateLimiter(max_requests=1, window_seconds=60, lockout_seconds=120)
    headers = auth(runtime)

    upload(client, headers)
    response = client.post('/files', files=[('files', ('b.txt', b'again', 'text/plain'))], headers=headers)

    assert response.status_code == 429
    assert response.headers['Retry-After'] == '120'
    assert response.json()['code'] == 'RATE_LIMITED'


def test_search_files(client, runtime):
    headers = auth(runtime)
    upload(client, headers, name='report.txt', content=b'quarterly numbers', category='reports')
    upload(client, headers, name='notes.txt', content=b'meeting notes')
    upload(client, auth(runtime, 'bob'), name='bob.txt', content=b'bob data')

    response = client.get('/files', headers=headers)
    assert response.status_code == 200
    assert response.json()['total'] == 2

    response = client.get('/files?category=reports', headers=headers)
    assert [r['original_name'] for r in response.json()['results']] == ['report.txt']

    response = client.get('/files?limit=1&sort_by=name&sort_order=asc', headers=headers)
    data = response.json()
    assert [r['original_name'] for r in data['results']] == ['notes.txt']
    assert data['has_more'] is True


def test_search_rejects_bad_parameters(client, runtime):
    headers = auth(runtime)

    assert client.get('/files?sort_order=sideways', headers=headers).status_code == 422
    assert client.get('/files?limit=0', headers=headers).status_code == 422

    response = client.get('/files?sort_by=content_hash', headers=headers)
    assert response.status_code == 400
    assert response.json()['code'] == 'VALIDATION_FAILED'


def test_get_file(client, runtime):
    headers = auth(runtime)
    file_id = upload(client, headers)['file_id']

    response = client.get(f'/files/{file_id}', headers=headers)
    assert response.status_code == 200
    record = response.json()['record']
    assert record['original_name'] == 'hello.txt'
    assert record['content_hash'] == HELLO_SHA256
    assert record['access']['owner'] == 'alice'


def test_get_encrypted_file_with_secrets(client, runtime):
    headers = auth(runtime)
    file_id = upload(client, headers, encrypt='true')['file_id']

    response = client.get(f'/files/{file_id}?include_secrets=true', headers=headers)
    assert response.status_code == 200
    assert len(response.json()['record']['provenance']['encryption_key']) == 64

    response = client.get(f'/files/{file_id}', headers=headers)
    assert 'encryption_key' not in response.json()['record']['provenance']


def test_get_unknown_file(client, runtime):
    response = client.get('/files/does-not-exist', headers=auth(runtime))
    assert response.status_code == 404
    assert response.json()['code'] == 'FILE_NOT_FOUND'


def test_other_user_cannot_read_private_file(client, runtime):
    file_id = upload(client, auth(runtime))['file_id']

    response = client.get(f'/files/{file_id}', headers=auth(runtime, 'bob'))
    assert response.status_code == 403


def test_update_file(client, runtime):
    headers = auth(runtime)
    file_id = upload(client, headers)['file_id']

    response = client.patch(f'/files/{file_id}', json={'description': 'updated', 'tags': ['x']}, headers=headers)
    assert response.status_code == 200
    record = response.json()['record']
    assert record['version'] == 2
    assert record['tags'] == ['x']

    response = client.get(f'/files/{file_id}/versions', headers=headers)
    assert [v['version'] for v in response.json()] == [1, 2]


def test_update_requires_changes(client, runtime):
    headers = auth(runtime)
    file_id = upload(client, headers)['file_id']

    response = client.patch(f'/files/{file_id}', json={}, headers=headers)
    assert response.status_code == 400


def test_download_file(client, runtime):
    headers = auth(runtime)
    file_id = upload(client, headers)['file_id']

    response = client.get(f'/files/{file_id}/download', headers=headers)
    assert response.status_code == 200
    assert response.content == b'hello'
    assert response.headers['X-Served-By'] == PRIMARY
    assert 'hello.txt' in response.headers['Content-Disposition']


def test_download_with_unicode_filename(client, runtime):
    headers = auth(runtime)
    name = 'résumé_文件.txt'
    file_id = upload(client, headers, name=name)['file_id']

    response = client.get(f'/files/{file_id}/download', headers=headers)
    assert response.status_code == 200
    assert response.content == b'hello'
    assert response.headers['content-type'].startswith('text/plain')
    disposition = response.headers['Content-Disposition']
    assert 'filename="r_sum____.txt"' in disposition
    assert f"filename*=UTF-8''{quote(name, safe='')}" in disposition


def test_attachment_disposition_escapes_quotes():
    disposition = attachment_disposition('say "hi".txt')

    assert disposition.startswith('attachment; filename="say _hi_.txt"; ')
    assert disposition.endswith("filename*=UTF-8''say%20%22hi%22.txt")


def test_signed_download_link(client, runtime):
    headers = auth(runtime)
    file_id = upload(client, headers)['file_id']

    response = client.post(f'/files/{file_id}/download-link?expires_in=60', headers=headers)
    assert response.status_code == 200
    link = response.json()
    assert link['expires_in'] == 60

    response = client.get(link['url'])
    assert response.status_code == 200
    assert response.content == b'hello'


def test_download_with_bad_signature(client, runtime):
    file_id = upload(client, auth(runtime))['file_id']

    response = client.get(f'/files/{file_id}/download?user=alice&expires=9999999999&signature=deadbeef')
    assert response.status_code == 401


def test_share_and_revoke(client, runtime):
    owner = auth(runtime)
    bob = auth(runtime, 'bob')
    file_id = upload(client, owner)['file_id']

    response = client.post(f'/files/{file_id}/shares', json={'grantee_id': 'bob'}, headers=owner)
    assert response.status_code == 201
    share = response.json()
    assert share['permissions'] == ['read']

    assert client.get(f'/files/{file_id}/download', headers=bob).status_code == 200

    response = client.delete(f'/files/{file_id}/shares/{share["share_id"]}', headers=owner)
    assert response.status_code == 200
    assert response.json()['active'] is False

    assert client.get(f'/files/{file_id}/download', headers=bob).status_code == 403


def test_delete_file(client, runtime):
    headers = auth(runtime)
    file_id = upload(client, headers)['file_id']

    response = client.delete(f'/files/{file_id}', headers=headers)
    assert response.status_code == 200
    data = response.json()
    assert sorted(data['deleted']) == [ARCHIVAL, PRIMARY]
    assert data['partial'] is False

    assert client.get(f'/files/{file_id}', headers=headers).status_code == 404


def test_stats(client, runtime):
    headers = auth(runtime)
    upload(client, headers)

    response = client.get('/files/stats', headers=headers)
    assert response.status_code == 200
    assert response.json()['total_files'] == 1


def test_backends_health(client, runtime):
    response = client.get('/backends/health', headers=auth(runtime))
    assert response.status_code == 200
    backends = response.json()['backends']
    assert backends[PRIMARY]['healthy'] is True
    assert backends[ARCHIVAL]['healthy'] is True


def test_backends_metrics(client, runtime):
    headers = auth(runtime)
    file_id = upload(client, headers)['file_id']
    client.get(f'/files/{file_id}/download', headers=headers)

    response = client.get('/backends/metrics', headers=headers)
    assert response.status_code == 200
    backends = response.json()['backends']
    assert backends[PRIMARY]['uploads']['count'] == 1
    assert backends[ARCHIVAL]['uploads']['count'] == 1
    assert backends[PRIMARY]['downloads']['count'] == 1


def test_export_and_import_metadata(client, runtime):
    file_id = upload(client, auth(runtime))['file_id']
    admin = auth(runtime, 'root', permissions=('admin',))

    response = client.get('/files/export', headers=admin)
    assert response.status_code == 200
    exported = response.json()
    assert exported['total_files'] == 1
    assert exported['records'][0]['file_id'] == file_id

    response = client.post('/files/import', json=exported, headers=admin)
    assert response.status_code == 200
    assert response.json() == {'imported': 0, 'skipped': 1, 'errors': 0}

    response = client.post('/files/import?overwrite=true', json=exported, headers=admin)
    assert response.json() == {'imported': 1, 'skipped': 0, 'errors': 0}


def test_export_requires_admin(client, runtime):
    headers = auth(runtime)
    assert client.get('/files/export', headers=headers).status_code == 403
    assert client.post('/files/import', json={'records': []}, headers=headers).status_code == 403

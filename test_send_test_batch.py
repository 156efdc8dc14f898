import json
from unittest.mock import MagicMock

from send_test_batch import encode_batch, main, send_batch, sign_payload
from webhook_security import verify_signature


def test_signed_headers_verify():
    body = encode_batch([{'id': '1', 'title': 'Ingénieur'}])
    headers = sign_payload(body, 'secret', timestamp=1_700_000_000)

    assert headers['X-Webhook-Timestamp'] == '1700000000'
    assert verify_signature(body, headers['X-Webhook-Signature'], headers['X-Webhook-Timestamp'],
                            'secret', now=1_700_000_000)


def test_send_batch_posts_raw_body():
    session = MagicMock()
    jobs = [{'id': '1', 'title': 'Engineer'}]

    send_batch('http://localhost:8000/webhook/drivehr-sync', jobs, 'secret', session=session)

    args, kwargs = session.post.call_args
    assert args == ('http://localhost:8000/webhook/drivehr-sync',)
    assert json.loads(kwargs['data']) == {'jobs': jobs}
    assert kwargs['headers']['X-Webhook-Signature'].startswith('sha256=')
    assert kwargs['timeout'] == 30


def test_main_requires_secret(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv('DRIVEHR_WEBHOOK_SECRET', raising=False)
    assert main(['jobs.json']) == 1
    assert main([]) == 2

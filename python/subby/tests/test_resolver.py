import json
from unittest.mock import patch

import pytest

from subby.auth.metadata import metadata_url
from subby.auth.resolver import resolve
from subby.auth.token_source import MetadataTokenSource, ServiceAccountTokenSource
from subby.errors import (
    KeyFileError,
    MetadataUnreachableError,
    NoCredentialsError,
    NoProjectIdError,
)
from subby.models.credentials import CredentialsConfig, ServiceAccountKey
from subby.models.settings import PubSubSettings
from subby.pubsub.client import PubSub
from subby.tests.fakes import METADATA_HOST, FakeResponse, gce_available, token_body

TOKEN_URI = "https://oauth2.googleapis.com/token"

EXPLICIT_KEY = ServiceAccountKey(
    private_key="explicit", client_email="explicit@proj.iam.gserviceaccount.com"
)


def _gce_check_calls(session, host=METADATA_HOST):
    return session.calls_to("GET", metadata_url(host))


async def test_explicit_key_beats_env_and_metadata(session, settings, key_file):
    gce_available(session)
    identity = await resolve(
        CredentialsConfig(explicit_key=EXPLICIT_KEY),
        session,
        settings,
        environ={"GOOGLE_APPLICATION_CREDENTIALS": key_file},
    )
    assert isinstance(identity.source, ServiceAccountTokenSource)
    assert identity.source.key is EXPLICIT_KEY
    assert _gce_check_calls(session) == []


async def test_env_key_file_beats_metadata(session, settings, key_file):
    gce_available(session)
    identity = await resolve(
        CredentialsConfig(),
        session,
        settings,
        environ={"GOOGLE_APPLICATION_CREDENTIALS": key_file},
    )
    assert isinstance(identity.source, ServiceAccountTokenSource)
    assert identity.source.key.client_email.startswith("publisher@")
    assert identity.project_id == "proj-1"
    assert _gce_check_calls(session) == []


async def test_metadata_used_when_no_key(session, settings):
    gce_available(session, project_id="gce-project")
    identity = await resolve(CredentialsConfig(), session, settings, environ={})
    assert isinstance(identity.source, MetadataTokenSource)
    assert identity.project_id == "gce-project"


async def test_no_credentials(session, settings):
    with pytest.raises(NoCredentialsError):
        await resolve(CredentialsConfig(), session, settings, environ={})
    assert len(_gce_check_calls(session)) == 1


async def test_gce_check_requires_metadata_flavor_header(session, settings):
    session.add("GET", metadata_url(METADATA_HOST), FakeResponse(200, "ok"))
    with pytest.raises(NoCredentialsError):
        await resolve(CredentialsConfig(), session, settings, environ={})


async def test_gce_check_timeout_is_negative_signal(session, settings):
    session.add("GET", metadata_url(METADATA_HOST), TimeoutError())
    with pytest.raises(NoCredentialsError):
        await resolve(CredentialsConfig(), session, settings, environ={})


async def test_empty_credentials_variable_is_ignored(session, settings):
    with pytest.raises(NoCredentialsError):
        await resolve(
            CredentialsConfig(),
            session,
            settings,
            environ={"GOOGLE_APPLICATION_CREDENTIALS": ""},
        )


async def test_unreadable_key_file_is_an_error(session, settings, tmp_path):
    gce_available(session)
    with pytest.raises(KeyFileError):
        await resolve(
            CredentialsConfig(),
            session,
            settings,
            environ={"GOOGLE_APPLICATION_CREDENTIALS": str(tmp_path / "missing.json")},
        )


async def test_key_file_project_id(session, settings, tmp_path):
    path = tmp_path / "key.json"
    path.write_text('{"private_key":"x","client_email":"a@b","project_id":"proj-1"}')
    identity = await resolve(
        CredentialsConfig(),
        session,
        settings,
        environ={"GOOGLE_APPLICATION_CREDENTIALS": str(path)},
    )
    assert identity.project_id == "proj-1"


async def test_explicit_project_id_wins(session, settings, key_file):
    identity = await resolve(
        CredentialsConfig(explicit_project_id="explicit-proj"),
        session,
        settings,
        environ={
            "GOOGLE_APPLICATION_CREDENTIALS": key_file,
            "GCLOUD_PROJECT_ID": "env-proj",
        },
    )
    assert identity.project_id == "explicit-proj"


async def test_explicit_project_id_skips_metadata_lookup(session, settings):
    gce_available(session)
    identity = await resolve(
        CredentialsConfig(explicit_project_id="explicit-proj"),
        session,
        settings,
        environ={},
    )
    assert identity.project_id == "explicit-proj"
    assert session.calls_to(
        "GET", metadata_url(METADATA_HOST, "project/project-id")
    ) == []


async def test_env_project_id_beats_key_and_metadata(session, settings, key_file):
    identity = await resolve(
        CredentialsConfig(),
        session,
        settings,
        environ={
            "GOOGLE_APPLICATION_CREDENTIALS": key_file,
            "GCLOUD_PROJECT_ID": "env-proj",
        },
    )
    assert identity.project_id == "env-proj"

    gce_available(session)
    identity = await resolve(
        CredentialsConfig(), session, settings, environ={"GCLOUD_PROJECT_ID": "env-proj"}
    )
    assert identity.project_id == "env-proj"


async def test_key_without_project_id(session, settings):
    with pytest.raises(NoProjectIdError):
        await resolve(
            CredentialsConfig(explicit_key=EXPLICIT_KEY), session, settings, environ={}
        )


async def test_metadata_project_lookup_failure_propagates(session, settings):
    session.add(
        "GET",
        metadata_url(METADATA_HOST),
        FakeResponse(200, "", {"Metadata-Flavor": "Google"}),
    )
    session.add(
        "GET", metadata_url(METADATA_HOST, "project/project-id"), FakeResponse(500, "")
    )
    with pytest.raises(MetadataUnreachableError):
        await resolve(CredentialsConfig(), session, settings, environ={})


async def test_metadata_host_override(session, monkeypatch):
    monkeypatch.delenv("SUBBY_METADATA_HOST", raising=False)
    settings = PubSubSettings()
    host = "127.0.0.1:8080"
    session.add(
        "GET", metadata_url(host), FakeResponse(200, "", {"Metadata-Flavor": "Google"})
    )
    session.add("GET", metadata_url(host, "project/project-id"), FakeResponse(200, "p"))
    identity = await resolve(
        CredentialsConfig(), session, settings, environ={"GCE_METADATA_HOST": host}
    )
    assert isinstance(identity.source, MetadataTokenSource)
    assert identity.source.metadata_host == host


async def test_explicit_metadata_host_setting_beats_environment(session, settings):
    gce_available(session, project_id="p")
    identity = await resolve(
        CredentialsConfig(),
        session,
        settings,
        environ={"GCE_METADATA_HOST": "127.0.0.1:8080"},
    )
    assert identity.source.metadata_host == METADATA_HOST
    assert session.calls_to("GET", metadata_url("127.0.0.1:8080")) == []


async def test_environment_changes_after_build_are_not_observed(
    session, settings, clock, key_file, tmp_path, monkeypatch
):
    monkeypatch.setenv("GOOGLE_APPLICATION_CREDENTIALS", key_file)
    monkeypatch.setenv("GCLOUD_PROJECT_ID", "from-os-env")
    client = await (
        PubSub.builder()
        .set_session(session)
        .set_settings(settings.model_copy(update={"validate_topics": False}))
        .set_clock(clock)
        .build()
    )

    other_key = tmp_path / "other.json"
    other_key.write_text(
        json.dumps(
            {
                "private_key": "other",
                "client_email": "other@elsewhere.iam.gserviceaccount.com",
                "token_uri": "https://other.test/token",
            }
        )
    )
    monkeypatch.setenv("GOOGLE_APPLICATION_CREDENTIALS", str(other_key))
    monkeypatch.setenv("GCLOUD_PROJECT_ID", "changed-later")

    publish_url = (
        "https://pubsub.googleapis.com/v1/projects/from-os-env/topics/events:publish"
    )
    session.add("POST", TOKEN_URI, FakeResponse(200, token_body("tok-1")))
    session.add("POST", publish_url, FakeResponse(200, '{"messageIds": ["m-1"]}'))
    with patch("subby.auth.token_source.jwt.encode", return_value="assertion") as encode:
        assert await client.topic("events").publish("x") == "m-1"

    assert client.project_id == "from-os-env"
    assert encode.call_args.args[0]["iss"] == "publisher@proj-1.iam.gserviceaccount.com"
    assert len(session.calls_to("POST", TOKEN_URI)) == 1
    assert session.calls_to("POST", "https://other.test/token") == []
    assert len(session.calls_to("POST", publish_url)) == 1

"""Tests for the knowledge base gateway and credential providers."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from shared.auth import (
    Boto3CredentialProvider,
    CognitoCredentialProvider,
    StaticCredentialProvider,
    create_credential_provider,
)
from shared.config import AWSSettings
from shared.errors import AuthError, RemoteServiceError
from shared.models import AWSCredentials


CREDENTIALS = AWSCredentials(access_key_id="AKIATEST", secret_access_key="secret")


def make_gateway(client, **kwargs):
    from kb_client.gateway import KnowledgeBaseGateway

    factory = MagicMock(return_value=client)
    gateway = KnowledgeBaseGateway(
        StaticCredentialProvider(CREDENTIALS),
        client_factory=factory,
        **kwargs
    )
    return gateway, factory


def throttled(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ThrottlingException", "Message": "Rate exceeded"}},
        operation
    )


class TestListKnowledgeBases:
    """Tests for knowledge base listing."""

    @pytest.mark.asyncio
    async def test_pages_are_concatenated_in_order(self):
        client = MagicMock()
        client.list_knowledge_bases.side_effect = [
            {
                "knowledgeBaseSummaries": [
                    {"knowledgeBaseId": "KB1", "name": "Admissions", "status": "ACTIVE"},
                ],
                "nextToken": "page-2",
            },
            {
                "knowledgeBaseSummaries": [
                    {"knowledgeBaseId": "KB2", "name": "Finance", "description": "Fees"},
                ],
            },
        ]
        gateway, factory = make_gateway(client, region="ap-southeast-1")

        summaries = await gateway.list_knowledge_bases()

        assert [s.knowledge_base_id for s in summaries] == ["KB1", "KB2"]
        assert summaries[1].description == "Fees"
        client.list_knowledge_bases.assert_any_call(nextToken="page-2")
        factory.assert_called_with("bedrock-agent", "ap-southeast-1", CREDENTIALS)

    @pytest.mark.asyncio
    async def test_listing_is_repeatable(self):
        client = MagicMock()
        client.list_knowledge_bases.return_value = {
            "knowledgeBaseSummaries": [{"knowledgeBaseId": "KB1", "name": "Admissions"}],
        }
        gateway, _ = make_gateway(client)

        first = await gateway.list_knowledge_bases()
        second = await gateway.list_knowledge_bases()

        assert first == second

    @pytest.mark.asyncio
    async def test_service_error_is_not_retried(self):
        client = MagicMock()
        client.list_knowledge_bases.side_effect = throttled("ListKnowledgeBases")
        gateway, _ = make_gateway(client)

        with pytest.raises(RemoteServiceError) as exc_info:
            await gateway.list_knowledge_bases()

        assert exc_info.value.code == "ThrottlingException"
        assert exc_info.value.operation == "list_knowledge_bases"
        assert isinstance(exc_info.value.__cause__, ClientError)
        assert client.list_knowledge_bases.call_count == 1

    @pytest.mark.asyncio
    async def test_transport_error_becomes_remote_service_error(self):
        client = MagicMock()
        client.list_knowledge_bases.side_effect = EndpointConnectionError(
            endpoint_url="https://bedrock-agent.us-east-1.amazonaws.com"
        )
        gateway, _ = make_gateway(client)

        with pytest.raises(RemoteServiceError) as exc_info:
            await gateway.list_knowledge_bases()

        assert exc_info.value.code is None

    @pytest.mark.asyncio
    async def test_credential_failure_propagates(self):
        from kb_client.gateway import KnowledgeBaseGateway

        credentials = MagicMock()
        credentials.fetch_session = AsyncMock(side_effect=AuthError("expired"))
        factory = MagicMock()
        gateway = KnowledgeBaseGateway(credentials, client_factory=factory)

        with pytest.raises(AuthError):
            await gateway.list_knowledge_bases()

        factory.assert_not_called()


class TestRetrieveAndGenerate:
    """Tests for managed retrieve-and-generate."""

    RESPONSE = {
        "sessionId": "remote-session-1",
        "output": {"text": "The rector is Prof. Dr. Nelly."},
        "citations": [
            {
                "generatedResponsePart": {
                    "textResponsePart": {
                        "text": "The rector is Prof. Dr. Nelly.",
                        "span": {"start": 0, "end": 29},
                    }
                },
                "retrievedReferences": [
                    {
                        "content": {"text": "Rector: Prof. Dr. Nelly."},
                        "location": {
                            "type": "S3",
                            "s3Location": {"uri": "s3://binus-docs/leadership.pdf"},
                        },
                        "metadata": {"page": 3},
                    }
                ],
            }
        ],
    }

    @pytest.mark.asyncio
    async def test_new_session(self):
        client = MagicMock()
        client.retrieve_and_generate.return_value = self.RESPONSE
        gateway, factory = make_gateway(client, model_arn="arn:model")

        result = await gateway.retrieve_and_generate(None, "KB1", "Who is the rector?")

        assert result.generated_text == "The rector is Prof. Dr. Nelly."
        assert result.session_id == "remote-session-1"

        citation = result.citations[0]
        assert citation.span_start == 0
        assert citation.span_end == 29
        assert citation.references[0].source == "s3://binus-docs/leadership.pdf"
        assert citation.references[0].metadata["page"] == 3

        params = client.retrieve_and_generate.call_args.kwargs
        assert "sessionId" not in params
        assert params["input"] == {"text": "Who is the rector?"}
        assert params["retrieveAndGenerateConfiguration"]["knowledgeBaseConfiguration"] == {
            "knowledgeBaseId": "KB1",
            "modelArn": "arn:model",
        }
        factory.assert_called_with("bedrock-agent-runtime", "us-east-1", CREDENTIALS)

    @pytest.mark.asyncio
    async def test_existing_session_is_continued(self):
        client = MagicMock()
        client.retrieve_and_generate.return_value = self.RESPONSE
        gateway, _ = make_gateway(client)

        result = await gateway.retrieve_and_generate("remote-session-1", "KB1", "And the dean?")

        assert client.retrieve_and_generate.call_args.kwargs["sessionId"] == "remote-session-1"
        assert result.session_id == "remote-session-1"

    @pytest.mark.asyncio
    async def test_unknown_session_raises(self):
        client = MagicMock()
        client.retrieve_and_generate.side_effect = ClientError(
            {"Error": {"Code": "ValidationException", "Message": "Session not found"}},
            "RetrieveAndGenerate"
        )
        gateway, _ = make_gateway(client)

        with pytest.raises(RemoteServiceError, match="Session not found"):
            await gateway.retrieve_and_generate("stale", "KB1", "Hi")


class TestRetrieve:
    """Tests for direct retrieval."""

    @pytest.mark.asyncio
    async def test_requests_configured_result_count(self):
        client = MagicMock()
        client.retrieve.return_value = {
            "retrievalResults": [
                {"content": {"text": "Doc A"}, "score": 0.9},
                {
                    "content": {"text": "Doc B"},
                    "score": 0.4,
                    "location": {"webLocation": {"url": "https://binus.ac.id/about"}},
                },
            ]
        }
        gateway, _ = make_gateway(client)

        documents = await gateway.retrieve("KB1", "campus")

        assert [d.content for d in documents] == ["Doc A", "Doc B"]
        assert documents[0].score == 0.9
        assert documents[1].source == "https://binus.ac.id/about"
        client.retrieve.assert_called_once_with(
            knowledgeBaseId="KB1",
            retrievalQuery={"text": "campus"},
            retrievalConfiguration={"vectorSearchConfiguration": {"numberOfResults": 5}},
        )

    @pytest.mark.asyncio
    async def test_empty_result(self):
        client = MagicMock()
        client.retrieve.return_value = {"retrievalResults": []}
        gateway, _ = make_gateway(client, number_of_results=2)

        assert await gateway.retrieve("KB1", "nothing") == []
        config = client.retrieve.call_args.kwargs["retrievalConfiguration"]
        assert config["vectorSearchConfiguration"]["numberOfResults"] == 2


class TestCredentialProviders:
    """Tests for credential acquisition."""

    @pytest.mark.asyncio
    async def test_static_provider(self):
        provider = StaticCredentialProvider(CREDENTIALS)

        assert await provider.fetch_session() is CREDENTIALS

    @pytest.mark.asyncio
    async def test_boto3_provider_without_credentials_raises(self):
        with patch("shared.auth.boto3.Session") as session_cls:
            session_cls.return_value.get_credentials.return_value = None
            provider = Boto3CredentialProvider("us-east-1")

            with pytest.raises(AuthError):
                await provider.fetch_session()

    @pytest.mark.asyncio
    async def test_boto3_provider_freezes_credentials(self):
        with patch("shared.auth.boto3.Session") as session_cls:
            frozen = session_cls.return_value.get_credentials.return_value.get_frozen_credentials.return_value
            frozen.access_key = "AKIA"
            frozen.secret_key = "shh"
            frozen.token = "token"

            credentials = await Boto3CredentialProvider("us-east-1", "dev").fetch_session()

        assert credentials.session_token == "token"
        session_cls.assert_called_once_with(profile_name="dev", region_name="us-east-1")

    @pytest.mark.asyncio
    async def test_cognito_credentials_are_cached(self):
        client = MagicMock()
        client.get_id.return_value = {"IdentityId": "us-east-1:abc"}
        client.get_credentials_for_identity.return_value = {
            "Credentials": {
                "AccessKeyId": "ASIA",
                "SecretKey": "secret",
                "SessionToken": "token",
                "Expiration": datetime.now(timezone.utc) + timedelta(hours=1),
            }
        }
        provider = CognitoCredentialProvider("us-east-1:pool", "us-east-1", client=client)

        first = await provider.fetch_session()
        second = await provider.fetch_session()

        assert first is second
        assert first.access_key_id == "ASIA"
        client.get_id.assert_called_once_with(IdentityPoolId="us-east-1:pool")
        client.get_credentials_for_identity.assert_called_once_with(IdentityId="us-east-1:abc")

    @pytest.mark.asyncio
    async def test_cognito_refreshes_near_expiry(self):
        client = MagicMock()
        client.get_id.return_value = {"IdentityId": "us-east-1:abc"}
        client.get_credentials_for_identity.return_value = {
            "Credentials": {
                "AccessKeyId": "ASIA",
                "SecretKey": "secret",
                "Expiration": datetime.now(timezone.utc) + timedelta(minutes=2),
            }
        }
        provider = CognitoCredentialProvider("us-east-1:pool", "us-east-1", client=client)

        await provider.fetch_session()
        await provider.fetch_session()

        assert client.get_credentials_for_identity.call_count == 2
        client.get_id.assert_called_once()

    @pytest.mark.asyncio
    async def test_cognito_failure_raises_auth_error(self):
        client = MagicMock()
        client.get_id.side_effect = ClientError(
            {"Error": {"Code": "NotAuthorizedException", "Message": "Unauthenticated access"}},
            "GetId"
        )
        provider = CognitoCredentialProvider("us-east-1:pool", "us-east-1", client=client)

        with pytest.raises(AuthError):
            await provider.fetch_session()

    def test_create_credential_provider(self):
        assert isinstance(create_credential_provider(AWSSettings()), Boto3CredentialProvider)
        assert isinstance(
            create_credential_provider(AWSSettings(credential_provider="cognito", identity_pool_id="p")),
            CognitoCredentialProvider
        )
        assert isinstance(
            create_credential_provider(AWSSettings(
                credential_provider="static", access_key_id="a", secret_access_key="b"
            )),
            StaticCredentialProvider
        )

    def test_unsupported_credential_provider(self):
        with pytest.raises(ValueError, match="Unsupported"):
            create_credential_provider(AWSSettings(credential_provider="vault"))

        with pytest.raises(ValueError):
            create_credential_provider(AWSSettings(credential_provider="cognito"))

"""Модуль для работы с SharePoint REST API.

Предоставляет фасад с автоматическим получением токена (по секрету
или сертификату), дайджестами для изменяющих запросов и пакетными
операциями через $batch.

Пример использования:
    from sharepointserver import get_sharepoint_config, SharePointApiClientManager

    config = get_sharepoint_config()
    manager = SharePointApiClientManager.from_config(config)

    title = await manager.get_web_title()
    outcomes = await manager.batch_create_list_items("Tasks", [{"Title": "A"}])

    await manager.close()
"""

from sharepointserver.api_client_manager import SharePointApiClientManager
from sharepointserver.batch import (
    BatchOperation,
    BatchOutcome,
    BatchRequest,
    OperationKind,
    build_batch,
    parse_batch_response,
)
from sharepointserver.config_reader import (
    SharePointConfig,
    get_sharepoint_config,
    parse_config_file,
)
from sharepointserver.credentials import (
    AuthFlow,
    CertificateCredentials,
    Credentials,
    SecretCredentials,
    resolve_credentials,
)
from sharepointserver.digest_provider import DigestProvider
from sharepointserver.exceptions import (
    SharePointAuthException,
    SharePointBackendException,
    SharePointBatchIncompleteException,
    SharePointBatchProtocolException,
    SharePointConfigException,
    SharePointDigestExpiredException,
    SharePointException,
    SharePointNetworkException,
    SharePointTimeoutException,
)
from sharepointserver.mock_data import (
    FieldDescriptor,
    LookupPlaceholder,
    generate_mock_value,
)
from sharepointserver.request_executor import RawResponse, RequestExecutor
from sharepointserver.seeding import MockDataResult, MockDataSeeder
from sharepointserver.session_manager import Session, SessionManager

__all__ = [
    # API Client Manager
    "SharePointApiClientManager",
    # Configuration
    "SharePointConfig",
    "get_sharepoint_config",
    "parse_config_file",
    # Credentials and sessions
    "AuthFlow",
    "CertificateCredentials",
    "Credentials",
    "SecretCredentials",
    "resolve_credentials",
    "Session",
    "SessionManager",
    "DigestProvider",
    # Transport
    "RawResponse",
    "RequestExecutor",
    # Batch
    "BatchOperation",
    "BatchOutcome",
    "BatchRequest",
    "OperationKind",
    "build_batch",
    "parse_batch_response",
    # Mock data
    "FieldDescriptor",
    "LookupPlaceholder",
    "generate_mock_value",
    "MockDataResult",
    "MockDataSeeder",
    # Exceptions
    "SharePointAuthException",
    "SharePointBackendException",
    "SharePointBatchIncompleteException",
    "SharePointBatchProtocolException",
    "SharePointConfigException",
    "SharePointDigestExpiredException",
    "SharePointException",
    "SharePointNetworkException",
    "SharePointTimeoutException",
]

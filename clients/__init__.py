# Infrastructure clients
from clients.vault_client import (
    VaultClient,
    get_database_url,
    get_session_secret,
    get_email_config,
    reset_vault_state,
)
from clients.postgres_client import PostgresClient
from clients.email_client import (
    EmailGatewayClient,
    EmailGatewayError,
    EmailSender,
    LoggingEmailSender,
)

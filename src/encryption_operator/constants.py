"""Constants for the Encryption Operator."""

# API Group
API_GROUP = "encryption.apiserver.operator.openshift.io"

# Namespaces
MANAGED_NAMESPACE = "openshift-config-managed"

# Labels
LABEL_COMPONENT = f"{API_GROUP}/component"

# Annotations
ANNOTATION_MODE = f"{API_GROUP}/mode"
ANNOTATION_INTERNAL_REASON = f"{API_GROUP}/internal-reason"
ANNOTATION_EXTERNAL_REASON = f"{API_GROUP}/external-reason"
ANNOTATION_MIGRATED_TIMESTAMP = f"{API_GROUP}/migrated-timestamp"
ANNOTATION_MIGRATED_RESOURCES = f"{API_GROUP}/migrated-resources"
ANNOTATION_DESCRIPTION = "kubernetes.io/description"
DESCRIPTION_WARNING = (
    "WARNING: DO NOT EDIT.\n"
    "Altering of the encryption secrets will render you cluster inaccessible.\n"
    "Catastrophic data loss can occur from the most minor changes."
)

# Secret data keys
DATA_KEY = f"{API_GROUP}-key"
DATA_KMS_PLUGIN_HASH = f"{API_GROUP}-kms-plugin-hash"
DATA_KMS_CONFIG = f"{API_GROUP}-kms-config"
ENCRYPTION_CONFIG_DATA_KEY = "encryption-config"

# Secret names
ENCRYPTION_CONFIG_SECRET_NAME = "encryption-config"

# Finalizers
FINALIZER = f"{API_GROUP}/deletion-protection"

# Config API
CONFIG_API_GROUP = "config.openshift.io"
CONFIG_API_VERSION = "v1"
APISERVER_PLURAL = "apiservers"
APISERVER_NAME = "cluster"

# Condition Types
COND_ENCRYPTED = "Encrypted"
COND_KEY_CONTROLLER_DEGRADED = "EncryptionKeyControllerDegraded"
COND_STATE_CONTROLLER_DEGRADED = "EncryptionStateControllerDegraded"
COND_MIGRATION_CONTROLLER_DEGRADED = "EncryptionMigrationControllerDegraded"
COND_MIGRATION_CONTROLLER_PROGRESSING = "EncryptionMigrationControllerProgressing"
COND_PRUNE_CONTROLLER_DEGRADED = "EncryptionPruneControllerDegraded"

# Encrypted condition reasons
REASON_ENCRYPTION_COMPLETED = "EncryptionCompleted"
REASON_ENCRYPTION_DISABLED = "EncryptionDisabled"
REASON_ENCRYPTION_IN_PROGRESS = "EncryptionInProgress"
REASON_DECRYPTION_COMPLETED = "DecryptionCompleted"
REASON_DECRYPTION_IN_PROGRESS = "DecryptionInProgress"
REASON_PRECONDITION_NOT_READY = "PreconditionNotReady"

# Event Reasons
EVENT_REASON_KEY_CREATED = "EncryptionKeyCreated"
EVENT_REASON_KEY_CREATE_FAILED = "EncryptionKeyCreateFailed"
EVENT_REASON_CONFIG_CREATED = "EncryptionConfigCreated"
EVENT_REASON_CONFIG_UPDATED = "EncryptionConfigUpdated"
EVENT_REASON_MIGRATION_STARTED = "EncryptionMigrationStarted"
EVENT_REASON_MIGRATION_FINISHED = "EncryptionMigrationFinished"
EVENT_REASON_MIGRATION_FAILED = "EncryptionMigrationFailed"
EVENT_REASON_KEYS_PRUNED = "EncryptionKeysPruned"
EVENT_REASON_SYNC_FAILED = "EncryptionSyncFailed"

# Operator status fields
STATUS_GENERATION_HIGH_WATER_MARK = "encryptionKeyGenerationHighWaterMark"

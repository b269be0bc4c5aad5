"""deployer_shared — Shared layer for the multi-account deployer Lambdas.

Provides:
    - Lock, build, deployment and target ledgers on DynamoDB
    - StackSet create/update, instance provisioning and status polling
    - Step Functions execution starter
    - AWS client singletons and DynamoDB serialization helpers
"""

__version__ = "1.0.0"

"""External system clients: AWS API Gateway, Stripe, chain JSON-RPC."""

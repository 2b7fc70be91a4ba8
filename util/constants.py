class InternalURIs:
    API = "/api"
    V1 = API + "/v1"
    CLAIM = V1 + "/claim"
    CLAIMS = V1 + "/claims"
    HEALTH_CLAIMS = V1 + "/health/claims"
    ADMIN_RESET_CLAIM = V1 + "/admin/claims/{claim_id}/reset"

class Headers:
    WALLET = "X-Wallet-Address"
    ADMIN_TOKEN = "X-Admin-Token"

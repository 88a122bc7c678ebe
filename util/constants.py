GEMINI_API_KEY_ENV_VAR = "GEMINI_API_KEY"

PIPELINE_CONFIG_ENV_VAR = "CONTENT_PIPELINE_CONFIG"

CONVERSATION_MODEL_ID = "gpt-4o"
TITLE_MODEL_ID = "gpt-4o-mini"
# TODO: pin model revision
LOCAL_MODEL_ID = "mlx-community/Qwen3-14B-8bit"

"""Real-time chat core: conversations, ordered message logs and live fan-out."""

"""Room messages, read receipts and typing indicators."""

"""Real-time chat: sessions, room membership, ordered delivery and presence."""

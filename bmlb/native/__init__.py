"""A minimal built-in BGP speaker: messages, sockets and sessions."""
"""Chain access - RPC client and contract ABI codecs."""

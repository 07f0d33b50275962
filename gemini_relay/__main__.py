from gemini_relay.server import run

run()

from duckchat.main import run

run()

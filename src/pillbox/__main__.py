from pillbox.main import run

run()

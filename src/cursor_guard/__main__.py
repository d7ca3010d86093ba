from cursor_guard.cli import main

main()

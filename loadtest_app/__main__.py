from loadtest_app.cli import main

raise SystemExit(main())

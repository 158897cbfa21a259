from pdf_ingest.workers.runner import main

if __name__ == "__main__":
    raise SystemExit(main())

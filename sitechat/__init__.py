"""SiteChat: question answering over crawled websites."""
